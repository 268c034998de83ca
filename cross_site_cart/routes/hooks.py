# cross_site_cart/routes/hooks.py
"""Target platform hooks: checkout completed, cart line removed."""
import threading

from flask import Blueprint, jsonify, request

from ..events import ORDER_COMPLETED
from ..utils.logger import info, error
from .common import json_body, services

bp = Blueprint("hooks", __name__)

# In-memory idempotency (best-effort)
_SEEN_IDS: dict[str, float] = {}
_SEEN_TTL = 60 * 10  # 10 minutes
_SEEN_LOCK = threading.Lock()

def _seen(webhook_id: str, now: float) -> bool:
    with _SEEN_LOCK:
        for k, ts in list(_SEEN_IDS.items()):
            if now - ts > _SEEN_TTL:
                _SEEN_IDS.pop(k, None)
        if not webhook_id:
            return False
        if webhook_id in _SEEN_IDS:
            return True
        _SEEN_IDS[webhook_id] = now
        return False


@bp.post("/orders/completed")
def orders_completed():
    svc = services()
    if _seen(request.headers.get("X-Webhook-Id", ""), svc.clock()):
        return "OK", 200

    oid = json_body().get("order_id")
    order = svc.orders.get(oid) if oid is not None else None
    if not order:
        return jsonify({"success": False, "message": "Order not found"}), 404

    order = svc.orders.set_status(order["id"], "completed")
    info(f"[hooks] order completed. OID={oid}")
    # relay subscribers hand the network calls to their own worker
    svc.bus.publish(ORDER_COMPLETED, order=order)
    return "Accepted", 202


@bp.post("/cart/item-removed")
def cart_item_removed():
    svc = services()
    if _seen(request.headers.get("X-Webhook-Id", ""), svc.clock()):
        return "OK", 200

    key = json_body().get("cart_item_key", "")
    line = svc.cart.remove(key)
    if not line:
        return "OK", 200
    info(f"[hooks] cart line removed. KEY={key} PID={line['product_id']}")

    def worker():
        try:
            svc.relay.notify_item_removed(line)
        except Exception as e:
            error(f"[hooks] item-removed worker KEY={key}: {e}")

    threading.Thread(target=worker, daemon=True).start()
    return "Accepted", 202
