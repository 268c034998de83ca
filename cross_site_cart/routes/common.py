# cross_site_cart/routes/common.py
from functools import wraps

from flask import current_app, request


def services():
    return current_app.extensions["cross_site_cart"]


def request_ip() -> str:
    """Peer address. Forwarded headers only count once ProxyFix has rewritten it."""
    return request.remote_addr or ""


def guarded(signed: bool = True):
    """Run the security gate before the view. Rejections raise and become JSON errors."""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            services().gate.evaluate(
                request_ip(),
                user_agent=request.headers.get("User-Agent", ""),
                route=request.path,
                raw_body=request.get_data(),
                headers=request.headers,
                signed=signed,
            )
            return view(*args, **kwargs)
        return wrapper
    return decorator


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
