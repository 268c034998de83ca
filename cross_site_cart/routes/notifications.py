# cross_site_cart/routes/notifications.py
"""Source-side endpoints the target calls after checkout."""
from flask import Blueprint, jsonify

from ..services.relay import apply_stock_update, record_item_removed, record_order_completion
from .common import guarded, json_body, services

bp = Blueprint("notifications", __name__)


@bp.post("/update-stock")
@guarded()
def update_stock():
    data = apply_stock_update(services().catalog, json_body())
    return jsonify({"success": True, "message": "Stock updated successfully", "data": data}), 200


@bp.post("/order-completed")
@guarded()
def order_completed():
    svc = services()
    data = record_order_completion(svc.settings, svc.bus, json_body())
    return jsonify({"success": True, "message": "Order completion recorded", "data": data}), 200


@bp.post("/item-removed")
@guarded()
def item_removed():
    data = record_item_removed(json_body())
    return jsonify({"success": True, "message": "Item removal noted", "data": data}), 200
