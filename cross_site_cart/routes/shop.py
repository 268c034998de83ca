# cross_site_cart/routes/shop.py
from flask import Blueprint, jsonify, request

from ..config import is_active
from ..errors import GENERIC_RETRY_MESSAGE, ValidationError
from ..utils.logger import error, info
from .common import json_body, services

bp = Blueprint("shop", __name__)


def _transfer_params() -> dict:
    if request.is_json:
        return json_body()
    form = request.form
    variation = {k[len("attribute_"):]: v for k, v in form.items() if k.startswith("attribute_")}
    return {
        "product_id": form.get("product_id"),
        "quantity": form.get("quantity", 1),
        "variation_id": form.get("variation_id"),
        "variation": variation,
    }


@bp.post("/transfer")
def transfer():
    """Shopper-facing add-to-cart: collect the product and hand it to the target site."""
    svc = services()
    if not is_active(svc.settings):
        return jsonify({"success": False, "message": "Cross-site transfer is not available."}), 400

    params = _transfer_params()
    try:
        product_id = int(params.get("product_id") or 0)
        variation_id = int(params["variation_id"]) if params.get("variation_id") else None
    except (TypeError, ValueError):
        return jsonify({"success": False, "message": "Invalid product."}), 400

    try:
        payload = svc.collector.collect(product_id, params.get("quantity", 1), variation_id,
                                        params.get("variation") or None)
    except ValidationError as e:
        info(f"[transfer] rejected product {product_id}: {e.message}")
        return jsonify({"success": False, "message": e.message}), 400

    try:
        result = svc.client.transfer(payload)
    except Exception as e:
        error(f"[transfer] unexpected failure for product {product_id}: {e}")
        return jsonify({"success": False, "message": GENERIC_RETRY_MESSAGE}), 200

    return jsonify(result.to_response()), 200
