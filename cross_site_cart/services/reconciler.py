# cross_site_cart/services/reconciler.py
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from urllib.parse import urlparse

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..errors import CartRejected, ImageDownloadFailed, ReconciliationError
from ..models import Result, TransferPayload
from ..utils.logger import info, warn
from .collector import public_meta

# cart line / order line provenance keys
TRANSFER_FLAG = "_cross_site_transfer"
SOURCE_SITE = "_cross_site_source"
ORIGINAL_PRICE = "_cross_site_original_price"
ORIGINAL_ID = "_cross_site_original_id"
TRANSFER_TIME = "_cross_site_transfer_time"
TRANSFER_META = "_cross_site_transfer_meta"

ORDER_LINE_KEYS = (SOURCE_SITE, ORIGINAL_PRICE, ORIGINAL_ID, TRANSFER_TIME)

# seconds per attempt
IMAGE_TIMEOUT = 5

# product provenance meta
PRODUCT_TRANSFERRED = "_cross_site_transferred"
PRODUCT_SOURCE_ID = "_cross_site_source_id"
PRODUCT_SOURCE_SITE = "_cross_site_source_site"
PRODUCT_CREATED = "_cross_site_created"

# =========================================================
# Image download (retry on transient responses)
# =========================================================

class TransientFetchError(Exception): pass

@retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type(TransientFetchError),
)
def _get_image_with_retry(url: str) -> bytes:
    r = requests.get(url, timeout=IMAGE_TIMEOUT)
    if r.status_code == 200:
        return r.content
    if r.status_code in (409, 429, 502, 503):
        raise TransientFetchError(f"HTTP {r.status_code}")
    raise ImageDownloadFailed(f"HTTP {r.status_code} for {url}")

def download_image(url: str) -> bytes:
    try:
        return _get_image_with_retry(url)
    except TransientFetchError as e:
        raise ImageDownloadFailed(f"{e} for {url}")
    except requests.RequestException as e:
        raise ImageDownloadFailed(f"{e.__class__.__name__} for {url}: {e}")

# =========================================================
# Cart hooks
# =========================================================

def pin_transferred_prices(cart):
    """Force transferred lines back to the source price before totals."""
    for line in cart.lines():
        original = line["data"].get(ORIGINAL_PRICE)
        if original not in (None, ""):
            line["price"] = Decimal(str(original))

def order_line_provenance(cart_line: dict) -> dict:
    data = cart_line.get("data") or {}
    if not data.get(TRANSFER_FLAG):
        return {}
    return {k: data[k] for k in ORDER_LINE_KEYS if k in data}

def transfer_item_data(cart_line: dict) -> list[dict]:
    """Display rows for a transferred cart line."""
    data = cart_line.get("data") or {}
    rows = []
    if data.get(SOURCE_SITE):
        rows.append({"name": "Transferred from", "value": urlparse(data[SOURCE_SITE]).hostname or data[SOURCE_SITE]})
    for key, value in (data.get(TRANSFER_META) or {}).items():
        rows.append({"name": key.replace("_", " ").capitalize(), "value": value})
    return rows

# =========================================================
# Reconciler
# =========================================================

class ProductReconciler:
    """
    Target side: find the product by SKU or create it, make it purchasable,
    then replace the cart contents with the single transferred line.
    """

    def __init__(self, catalog, cart, settings, fetch_image=download_image, clock=time.time):
        self.catalog = catalog
        self.cart = cart
        self.settings = settings
        self.fetch_image = fetch_image
        self.clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, sku: str) -> threading.Lock:
        with self._locks_guard:
            if sku not in self._locks:
                self._locks[sku] = threading.Lock()
            return self._locks[sku]

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self.clock(), timezone.utc).isoformat()

    def reconcile(self, payload: TransferPayload) -> Result:
        try:
            self.cart.empty()
            self.cart.clear_notices()

            product_id = self.find_or_create(payload)
            self.ensure_purchasable(product_id, payload)

            item_data = {
                TRANSFER_FLAG: True,
                SOURCE_SITE: payload.source_site,
                ORIGINAL_PRICE: str(payload.price),
                ORIGINAL_ID: payload.original_product_id,
                TRANSFER_TIME: self._now_iso(),
                TRANSFER_META: dict(payload.meta_data),
            }
            key = self.cart.add(product_id, payload.quantity, None, payload.variation_data, item_data)
            if not key:
                notices = self.cart.notices()
                self.cart.clear_notices()
                msg = "Failed to add product to cart"
                if notices:
                    msg += f": {notices[0]}"
                raise CartRejected(msg, details=notices)

            total = self.cart.calculate_totals()
            info(f"[reconcile] {payload.source_site} #{payload.original_product_id} -> product {product_id} "
                 f"x{payload.quantity} (cart total {total})")
            return Result.success({
                "product_id": product_id,
                "cart_item_key": key,
                "cart_url": self.cart_url(),
                "cart_count": self.cart.count(),
                "cart_total": str(total),
            })
        except ReconciliationError as e:
            warn(f"[reconcile] {e.message}", {"sku": payload.sku, "source": payload.source_site})
            return Result.failure(e)

    def cart_url(self) -> str:
        return self.settings.get("site_url", "").rstrip("/") + "/cart/"

    # ---- product resolution ----

    def find_or_create(self, payload: TransferPayload) -> int:
        if not payload.sku:
            return self.create_product(payload)

        with self._lock_for(payload.sku):
            pid = self.catalog.find_by_sku(payload.sku)
            if pid:
                info(f"[reconcile] SKU {payload.sku} exists as product {pid}, reusing")
                return pid
            return self.create_product(payload)

    def create_product(self, payload: TransferPayload) -> int:
        meta = {k: v for k, v in public_meta(payload.meta_data).items() if v != ""}
        meta.update({
            PRODUCT_TRANSFERRED: True,
            PRODUCT_SOURCE_ID: payload.original_product_id,
            PRODUCT_SOURCE_SITE: payload.source_site,
            PRODUCT_CREATED: self.clock(),
        })
        pid = self.catalog.create(
            name=payload.name,
            description=payload.description,
            short_description=payload.short_description,
            sku=payload.sku,
            price=str(payload.price),
            regular_price=str(payload.price),
            status="publish",
            catalog_visibility="hidden",
            virtual=True,
            weight=payload.weight,
            dimensions={
                "length": payload.dimensions.length,
                "width": payload.dimensions.width,
                "height": payload.dimensions.height,
            },
            attributes={k: list(v) for k, v in payload.attributes.items()},
            meta=meta,
            created_at=self.clock(),
        )
        if not pid:
            raise ReconciliationError("Failed to create product")

        self.catalog.set_terms(pid, "product_cat", payload.categories)
        self.catalog.set_terms(pid, "product_tag", payload.tags)
        self._attach_images(pid, payload)
        info(f"[reconcile] created product {pid} for SKU {payload.sku or '(none)'}")
        return pid

    def _attach_images(self, pid: int, payload: TransferPayload):
        featured_set = False
        for img in payload.images:
            try:
                content = self.fetch_image(img.url)
            except ImageDownloadFailed as e:
                warn(f"[reconcile] image skipped for product {pid}: {e.message}")
                continue
            self.catalog.attach_image(pid, img.url, content, alt=img.alt, title=img.title,
                                      caption=img.caption, featured=not featured_set)
            featured_set = True

    def ensure_purchasable(self, pid: int, payload: TransferPayload):
        product = self.catalog.get(pid)
        if not product:
            raise ReconciliationError("Product does not exist")
        if self.catalog.is_purchasable(pid):
            return
        warn(f"[reconcile] product {pid} not purchasable (status={product.get('status')}, "
             f"price={product.get('price')}), correcting")
        fixes = {"status": "publish", "catalog_visibility": "hidden"}
        if product.get("price") in (None, ""):
            fixes.update(price=str(payload.price), regular_price=str(payload.price))
        self.catalog.save(pid, **fixes)
        if not self.catalog.is_purchasable(pid):
            raise ReconciliationError(f"Product {pid} could not be made purchasable")
