# cross_site_cart/services/collector.py
import time
from datetime import datetime, timezone
from typing import Optional

from ..errors import ValidationError
from ..models import Dimensions, Image, TransferPayload, to_decimal

PRIVATE_META_PREFIX = "_"


def _blank(v) -> bool:
    return v is None or v == ""


def public_meta(meta: dict) -> dict:
    """Scalar meta whose keys are not private (leading underscore)."""
    out = {}
    for key, value in (meta or {}).items():
        if not key or key.startswith(PRIVATE_META_PREFIX):
            continue
        if isinstance(value, list) and len(value) == 1:
            value = value[0]
        if isinstance(value, (str, int, float, bool)):
            out[key] = value
    return out


class ProductCollector:
    """Builds the transfer payload for a product on the source catalog. Read-only."""

    def __init__(self, catalog, settings, clock=time.time):
        self.catalog = catalog
        self.settings = settings
        self.clock = clock

    def collect(self, product_id: int, quantity, variation_id: Optional[int] = None,
                variation_data: Optional[dict] = None) -> TransferPayload:
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError("Quantity must be a whole number")
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than zero")

        product = self.catalog.get(product_id)
        if not product:
            raise ValidationError("Product not found")

        variation = self._resolve_variation(product, variation_id)
        effective = variation or product

        def pick(field):
            value = effective.get(field)
            return product.get(field) if _blank(value) else value

        price = to_decimal(pick("price"))
        if price is None:
            raise ValidationError("Product has no price")

        dims = {**(product.get("dimensions") or {}),
                **{k: v for k, v in ((variation or {}).get("dimensions") or {}).items() if not _blank(v)}}

        if variation and not variation_data:
            variation_data = dict(variation.get("attributes") or {})

        return TransferPayload(
            original_product_id=product["id"],
            variation_id=variation["id"] if variation else None,
            sku=pick("sku") or "",
            name=effective.get("name") or product.get("name") or "",
            description=product.get("description") or "",
            short_description=product.get("short_description") or "",
            price=price,
            regular_price=to_decimal(pick("regular_price"), "regular_price"),
            sale_price=to_decimal(effective.get("sale_price"), "sale_price"),
            quantity=quantity,
            variation_data=dict(variation_data or {}),
            weight=str(pick("weight") or ""),
            dimensions=Dimensions(
                length=str(dims.get("length") or ""),
                width=str(dims.get("width") or ""),
                height=str(dims.get("height") or ""),
            ),
            meta_data=public_meta(product.get("meta")),
            images=self._images(product),
            categories=list(product.get("categories") or []),
            tags=list(product.get("tags") or []),
            attributes={name: list(values) for name, values in (product.get("attributes") or {}).items()},
            source_site=self.settings.get("site_url", ""),
            timestamp=datetime.fromtimestamp(self.clock(), timezone.utc).isoformat(),
        )

    def _resolve_variation(self, product: dict, variation_id) -> Optional[dict]:
        if product.get("type") != "variable":
            if variation_id:
                raise ValidationError("Product has no variations")
            return None
        if not variation_id:
            raise ValidationError("Please select product options")
        variation = self.catalog.get(variation_id)
        if not variation or variation.get("parent_id") != product["id"]:
            raise ValidationError("Selected product options are not available")
        return variation

    def _images(self, product: dict) -> list[Image]:
        ids = [product.get("image_id")] + list(product.get("gallery_image_ids") or [])
        images = []
        for aid in ids:
            if not aid:
                continue
            a = self.catalog.get_attachment(aid)
            if not a or not a.get("url"):
                continue
            images.append(Image(id=aid, url=a["url"], alt=a.get("alt", ""),
                                title=a.get("title", ""), caption=a.get("caption", "")))
        return images
