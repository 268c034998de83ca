# cross_site_cart/routes/api.py
import time
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from ..config import PLATFORM_VERSION, PLUGIN_VERSION, ensure_encryption_key, is_active, is_configured
from ..errors import AuthError, CrossSiteCartError, GateRejection, ReplayError, ServerError, SignatureError, ValidationError
from ..models import TransferPayload
from ..services.gate import timestamp_fresh
from ..services.reconciler import TRANSFER_FLAG, transfer_item_data
from ..utils.hash import sign_payload, signatures_match
from ..utils.logger import error, info
from ..utils.security import parse_basic_auth
from .common import guarded, json_body, request_ip, services

bp = Blueprint("api", __name__)


# =========================================================
# Receiver gating
# =========================================================

def _authenticate(settings, header: str | None):
    key, secret = parse_basic_auth(header)
    if settings.get("strict_auth"):
        if not (signatures_match(settings.get("api_key") or "", key)
                and signatures_match(settings.get("api_secret") or "", secret)):
            raise AuthError("Invalid API credentials")


def _verify_envelope(settings, envelope: dict, now: float):
    signature = envelope.get("signature")
    timestamp = envelope.get("timestamp")
    if not signature or timestamp in (None, ""):
        raise SignatureError("Missing signature")
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        raise SignatureError("Invalid signature")
    expected = sign_payload(envelope["product_data"], ts, ensure_encryption_key(settings))
    if not signatures_match(expected, str(signature)):
        raise SignatureError("Invalid signature")
    if not timestamp_fresh(ts, now):
        raise ReplayError("Request expired")


@bp.post("/receive-product")
@guarded(signed=False)
def receive_product():
    svc = services()
    ip = request_ip()
    envelope = json_body()

    try:
        _authenticate(svc.settings, request.headers.get("Authorization"))
        if not envelope.get("product_data"):
            raise ValidationError("Missing product data", code="missing_data")
        _verify_envelope(svc.settings, envelope, svc.clock())
    except GateRejection as e:
        svc.gate.record_rejection(e, ip, request.headers.get("User-Agent", ""), request.path)
        raise

    try:
        payload = TransferPayload.from_dict(envelope["product_data"])
        info(f"[receive] product {payload.original_product_id} from {payload.source_site or request.headers.get('X-Source-Site', '?')}")
        result = svc.reconciler.reconcile(payload)
    except CrossSiteCartError:
        raise
    except Exception as e:
        error(f"[receive] unexpected failure: {e}", {"ip": ip})
        raise ServerError("Internal server error")

    if not result.ok:
        return jsonify(result.error.to_response()), result.error.status

    value = result.value
    return jsonify({
        "success": True,
        "message": "Product added to cart successfully",
        "data": {
            "product_id": value["product_id"],
            "cart_item_key": value["cart_item_key"],
            "redirect_url": value["cart_url"],
            "cart_count": value["cart_count"],
            "cart_total": value["cart_total"],
        },
    }), 200


# =========================================================
# Diagnostics
# =========================================================

@bp.get("/test-connection")
@guarded(signed=False)
def test_connection():
    svc = services()
    now = svc.clock()
    return jsonify({
        "success": True,
        "message": "Connection successful",
        "site_name": svc.settings.get("site_name", ""),
        "site_url": svc.settings.get("site_url", ""),
        "platform_version": PLATFORM_VERSION,
        "plugin_version": PLUGIN_VERSION,
        "server_time": datetime.fromtimestamp(now, timezone.utc).isoformat(),
        "timezone": time.strftime("%Z") or "UTC",
    }), 200


@bp.get("/cart")
@guarded()
def cart_contents():
    svc = services()
    cart = svc.cart
    total = cart.calculate_totals()

    items, issues = [], []
    for line in cart.lines():
        product = svc.catalog.get(line["product_id"]) or {}
        if not svc.catalog.is_purchasable(line["product_id"]):
            issues.append(f"Product {line['product_id']} is not purchasable")
        items.append({
            "key": line["key"],
            "product_id": line["product_id"],
            "name": product.get("name", ""),
            "quantity": line["quantity"],
            "price": str(line["price"]),
            "line_total": str(line["line_total"]),
            "variation": line["variation"],
            "transferred": bool(line["data"].get(TRANSFER_FLAG)),
            "item_data": transfer_item_data(line),
        })

    return jsonify({
        "success": True,
        "data": {
            "items": items,
            "count": cart.count(),
            "total": str(total),
            "valid": not issues,
            "issues": issues,
        },
    }), 200


@bp.get("/check-product")
@guarded(signed=False)
def check_product():
    svc = services()
    sku = (request.args.get("sku") or "").strip()
    product_id = request.args.get("product_id", type=int)
    if not sku and not product_id:
        raise ValidationError("Provide sku or product_id", code="missing_data")

    pid = svc.catalog.find_by_sku(sku) if sku else product_id
    product = svc.catalog.get(pid) if pid else None
    if not product:
        return jsonify({"success": True, "data": {"exists": False}}), 200

    return jsonify({
        "success": True,
        "data": {
            "exists": True,
            "product_id": product["id"],
            "name": product["name"],
            "sku": product["sku"],
            "price": None if product["price"] is None else str(product["price"]),
            "stock_status": product["stock_status"],
            "purchasable": svc.catalog.is_purchasable(product["id"]),
        },
    }), 200


@bp.get("/status")
@guarded()
def status():
    svc = services()
    s = svc.settings
    return jsonify({
        "success": True,
        "data": {
            "plugin_version": PLUGIN_VERSION,
            "platform_version": PLATFORM_VERSION,
            "site_url": s.get("site_url", ""),
            "target_url": s.get("target_url", ""),
            "enabled": bool(s.get("enabled")),
            "configured": is_configured(s),
            "active": is_active(s),
            "ssl_verify": bool(s.get("ssl_verify", True)),
            "strict_auth": bool(s.get("strict_auth")),
            "rate_limit": s.get("rate_limit"),
            "allowed_ips": len(s.get("allowed_ips") or []),
            "banned_ips": len(s.get("banned_ips") or {}),
            "ledger": svc.ledger.stats(),
            "counters": {
                "total_transfers": s.get("total_transfers", 0),
                "successful_transfers": s.get("successful_transfers", 0),
                "failed_transfers": s.get("failed_transfers", 0),
                "completed_orders": s.get("completed_orders", 0),
                "total_revenue": str(s.get("total_revenue", "0")),
            },
            "recent_security_events": svc.gate.recent_events(10),
        },
    }), 200
