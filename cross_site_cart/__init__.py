import sys
import logging

import click
from flask import Flask, jsonify
from dotenv import load_dotenv
from werkzeug.middleware.proxy_fix import ProxyFix

from .errors import CrossSiteCartError

EXTENSION_KEY = "cross_site_cart"


def create_app(services=None):
    load_dotenv()
    app = Flask(__name__)

    # =========================================================
    # Logging: gunicorn handlers plus stdout
    # =========================================================
    gunicorn_error = logging.getLogger("gunicorn.error")
    app.logger.handlers = list(gunicorn_error.handlers)
    app.logger.setLevel(logging.INFO)

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(logging.INFO)
    sh.setFormatter(logging.Formatter("[%(asctime)s][%(levelname)s] %(message)s", "%H:%M:%S"))
    app.logger.addHandler(sh)

    # =========================================================
    # Services
    # =========================================================
    if services is None:
        from .container import build_services
        services = build_services()
    app.extensions[EXTENSION_KEY] = services

    # Only trust X-Forwarded-For from the configured number of proxy hops
    hops = int(services.settings.get("trusted_proxies") or 0)
    if hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops, x_host=hops)

    # =========================================================
    # Blueprints
    # =========================================================
    from .config import API_NAMESPACE
    from .routes.api import bp as api_bp
    from .routes.notifications import bp as notifications_bp
    from .routes.shop import bp as shop_bp
    from .routes.hooks import bp as hooks_bp

    app.register_blueprint(api_bp, url_prefix=API_NAMESPACE)
    app.register_blueprint(notifications_bp, url_prefix=API_NAMESPACE)
    app.register_blueprint(shop_bp)
    app.register_blueprint(hooks_bp, url_prefix="/hooks")

    # =========================================================
    # Errors
    # =========================================================
    @app.errorhandler(CrossSiteCartError)
    def handle_cross_site_error(e: CrossSiteCartError):
        return jsonify(e.to_response()), e.status

    # =========================================================
    # Health check
    # =========================================================
    @app.get("/health")
    def health():
        app.logger.info("Health check endpoint called")
        return {"ok": True}, 200

    # =========================================================
    # Daily cleanup (scheduled by the host)
    # =========================================================
    @app.cli.command("cleanup")
    def cleanup_command():
        from .services.cleanup import run_cleanup
        counts = run_cleanup(app.extensions[EXTENSION_KEY])
        for name, n in counts.items():
            click.echo(f"{name}: {n}")

    @app.cli.command("rotate-key")
    def rotate_key_command():
        """Replace the shared signing key. The other site must be given the new value."""
        from .config import rotate_encryption_key
        click.echo(rotate_encryption_key(app.extensions[EXTENSION_KEY].settings))

    return app
