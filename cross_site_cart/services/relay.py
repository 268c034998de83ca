# cross_site_cart/services/relay.py
"""
Post-purchase signals between the two sites.

Target side: `CompletionRelay` reports completed orders and removed cart lines
back to the source site. Every call is best effort; failures are logged and
never reach the checkout flow.

Source side: `apply_stock_update` and `record_order_completion` handle those
reports.
"""
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config import RELAY_TIMEOUT, ensure_encryption_key
from ..errors import ValidationError
from ..events import ORDER_COMPLETED_NOTIFICATION
from ..utils.hash import canonical_json
from ..utils.logger import info, warn, error
from ..utils.security import basic_auth_header
from ..clients.transfer import api_base, request_with_tls_fallback, signed_headers
from .reconciler import ORIGINAL_ID, SOURCE_SITE, TRANSFER_FLAG

# =========================================================
# Target side
# =========================================================

class TransientRelayError(Exception): pass


class CompletionRelay:
    def __init__(self, settings, http=requests, clock=time.time):
        self.settings = settings
        self.http = http
        self.clock = clock

    def _post(self, source_site: str, route: str, body: dict):
        secret = ensure_encryption_key(self.settings)
        raw = canonical_json(body).encode("utf-8")
        headers = signed_headers(raw, int(self.clock()), secret, self.settings.get("site_url", ""))
        if self.settings.get("api_key") and self.settings.get("api_secret"):
            headers["Authorization"] = basic_auth_header(self.settings.get("api_key"), self.settings.get("api_secret"))
        return self._post_with_retry(f"{api_base(source_site)}/{route}", raw, headers)

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(TransientRelayError),
    )
    def _post_with_retry(self, url: str, raw: bytes, headers: dict):
        r, _ = request_with_tls_fallback(self.http, self.settings, "POST", url, RELAY_TIMEOUT,
                                         data=raw, headers=headers)
        if r.status_code in (200, 201, 202):
            return r
        if r.status_code in (409, 429, 502, 503):
            raise TransientRelayError(f"{r.status_code} {r.text[:200]}")
        raise RuntimeError(f"POST {url} failed {r.status_code}: {r.text[:200]}")

    def _notify(self, source_site: str, route: str, body: dict) -> bool:
        try:
            self._post(source_site, route, body)
            return True
        except Exception as e:
            error(f"[relay] {route} -> {source_site} failed: {e}", {"body": body})
            return False

    def notify_order_completed(self, order: dict) -> int:
        """Report each transferred line of a completed order. Returns lines reported."""
        reported = 0
        oid = order.get("id")
        for line in order.get("lines") or []:
            meta = line.get("meta") or {}
            source_site = meta.get(SOURCE_SITE)
            if not source_site:
                continue
            source_pid = meta.get(ORIGINAL_ID) or line.get("product_id")
            qty = int(line.get("quantity") or 0)
            info(f"[relay] OID={oid} source #{source_pid} x{qty} -> {source_site}")
            stock_ok = self._notify(source_site, "update-stock", {
                "product_id": source_pid,
                "quantity_sold": qty,
                "order_id": oid,
            })
            done_ok = self._notify(source_site, "order-completed", {
                "order_id": oid,
                "order_total": str(order.get("total") or 0),
                "order_status": order.get("status", ""),
                "product_id": source_pid,
                "quantity": qty,
                "item_total": str(line.get("total") or 0),
                "completed_at": datetime.fromtimestamp(self.clock(), timezone.utc).isoformat(),
                "customer_email": order.get("billing_email", ""),
                "customer_name": f"{order.get('billing_first_name', '')} {order.get('billing_last_name', '')}".strip(),
            })
            if stock_ok and done_ok:
                reported += 1
        return reported

    def notify_item_removed(self, cart_line: dict) -> bool:
        data = cart_line.get("data") or {}
        if not data.get(TRANSFER_FLAG) or not data.get(SOURCE_SITE):
            return False
        return self._notify(data[SOURCE_SITE], "item-removed", {
            "product_id": data.get(ORIGINAL_ID),
            "removed_at": datetime.fromtimestamp(self.clock(), timezone.utc).isoformat(),
        })

    def dispatch(self, order: dict) -> threading.Thread:
        """Run notify_order_completed off the request thread."""
        oid = order.get("id")

        def worker():
            try:
                self.notify_order_completed(order)
            except Exception as e:
                error(f"[relay] worker OID={oid}: {e}")

        t = threading.Thread(target=worker, daemon=True)
        t.start()
        return t

    # event bus adapter
    def on_order_completed(self, order: dict, **_):
        self.dispatch(order)


# =========================================================
# Source side
# =========================================================

def _int_field(params: dict, name: str, default=None) -> int:
    value = params.get(name, default)
    if value is None:
        raise ValidationError(f"Missing required parameter: {name}", code="missing_data")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Parameter {name} must be an integer", code="missing_data")


def apply_stock_update(catalog, params: dict) -> dict:
    product_id = _int_field(params, "product_id")
    quantity_sold = _int_field(params, "quantity_sold")
    order_id = params.get("order_id")

    product = catalog.get(product_id)
    if not product:
        raise ValidationError("Product not found", status=404, code="product_not_found")

    if not product.get("manage_stock"):
        return {"product_id": product_id, "manages_stock": False}

    current = int(product.get("stock_quantity") or 0)
    new_stock = max(0, current - quantity_sold)
    fields = {"stock_quantity": new_stock}
    if new_stock == 0:
        fields["stock_status"] = "outofstock"
    catalog.save(product_id, **fields)
    info(f"[relay] stock for product {product_id}: {current} -> {new_stock} (order {order_id})")
    return {
        "product_id": product_id,
        "previous_stock": current,
        "new_stock": new_stock,
        "quantity_sold": quantity_sold,
    }


def record_order_completion(settings, bus, params: dict) -> dict:
    order_id = _int_field(params, "order_id")
    product_id = _int_field(params, "product_id")
    quantity = _int_field(params, "quantity", 1)
    try:
        item_total = Decimal(str(params.get("item_total") or 0))
    except InvalidOperation:
        raise ValidationError("Parameter item_total must be numeric", code="missing_data")
    customer_email = (params.get("customer_email") or "").strip()

    settings.increment("completed_orders")
    settings.update("total_revenue", lambda v: str(Decimal(str(v or 0)) + item_total), "0")
    info(f"[relay] completion: order {order_id}, product {product_id}, customer {customer_email or '-'}")

    bus.publish(ORDER_COMPLETED_NOTIFICATION, order_id=order_id, product_id=product_id,
                quantity=quantity, total=item_total, customer_email=customer_email)
    return {"order_id": order_id, "product_id": product_id,
            "recorded_at": datetime.now(timezone.utc).isoformat()}


def record_item_removed(params: dict) -> dict:
    warn(f"[relay] product {params.get('product_id')} removed from target cart at {params.get('removed_at')}")
    return {"product_id": params.get("product_id")}
