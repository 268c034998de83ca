"""Transfer payload and result types shared by both ends of a transfer."""
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .errors import CrossSiteCartError, ValidationError


def to_decimal(value, field_name: str = "price") -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid decimal for {field_name}: {value!r}")


def _dec_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class Image:
    id: Any
    url: str
    alt: str = ""
    title: str = ""
    caption: str = ""


@dataclass
class Dimensions:
    length: str = ""
    width: str = ""
    height: str = ""


@dataclass
class TransferPayload:
    original_product_id: int
    sku: str
    name: str
    price: Decimal
    quantity: int
    source_site: str
    timestamp: str
    variation_id: Optional[int] = None
    description: str = ""
    short_description: str = ""
    regular_price: Optional[Decimal] = None
    sale_price: Optional[Decimal] = None
    variation_data: dict = field(default_factory=dict)
    weight: str = ""
    dimensions: Dimensions = field(default_factory=Dimensions)
    meta_data: dict = field(default_factory=dict)
    images: list[Image] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    attributes: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        # decimals travel as strings so the price arrives verbatim
        data["price"] = _dec_str(self.price)
        data["regular_price"] = _dec_str(self.regular_price)
        data["sale_price"] = _dec_str(self.sale_price)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TransferPayload":
        if not isinstance(data, dict):
            raise ValidationError("product_data must be an object")
        missing = [k for k in ("original_product_id", "name", "price", "quantity") if data.get(k) in (None, "")]
        if missing:
            raise ValidationError(f"Missing product fields: {', '.join(missing)}")
        try:
            quantity = int(data["quantity"])
            original_id = int(data["original_product_id"])
            variation_id = int(data["variation_id"]) if data.get("variation_id") else None
        except (TypeError, ValueError):
            raise ValidationError("quantity and product ids must be integers")
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")
        dims = data.get("dimensions") or {}
        return cls(
            original_product_id=original_id,
            variation_id=variation_id,
            sku=data.get("sku") or "",
            name=data["name"],
            description=data.get("description") or "",
            short_description=data.get("short_description") or "",
            price=to_decimal(data["price"]),
            regular_price=to_decimal(data.get("regular_price"), "regular_price"),
            sale_price=to_decimal(data.get("sale_price"), "sale_price"),
            quantity=quantity,
            variation_data=dict(data.get("variation_data") or {}),
            weight=str(data.get("weight") or ""),
            dimensions=Dimensions(
                length=str(dims.get("length") or ""),
                width=str(dims.get("width") or ""),
                height=str(dims.get("height") or ""),
            ),
            meta_data=dict(data.get("meta_data") or {}),
            images=[Image(id=img.get("id"), url=img["url"], alt=img.get("alt") or "",
                          title=img.get("title") or "", caption=img.get("caption") or "")
                    for img in (data.get("images") or []) if isinstance(img, dict) and img.get("url")],
            categories=list(data.get("categories") or []),
            tags=list(data.get("tags") or []),
            attributes={k: list(v) for k, v in (data.get("attributes") or {}).items()},
            source_site=data.get("source_site") or "",
            timestamp=data.get("timestamp") or "",
        )


@dataclass
class Result:
    """Explicit success/failure outcome of an operation."""
    value: Any = None
    error: Optional[CrossSiteCartError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: CrossSiteCartError) -> "Result":
        return cls(error=error)


@dataclass
class TransferResult:
    success: bool
    redirect_url: Optional[str] = None
    message: str = ""
    ssl_warning: Optional[str] = None
    ledger_id: Optional[int] = None
    error: Optional[CrossSiteCartError] = None

    def to_response(self) -> dict:
        body = {"success": self.success, "message": self.message}
        if self.redirect_url:
            body["redirect_url"] = self.redirect_url
        if self.ssl_warning:
            body["ssl_warning"] = self.ssl_warning
        return body
