# cross_site_cart/services/cleanup.py
from datetime import datetime, timezone

from ..utils.logger import info
from .reconciler import PRODUCT_CREATED, PRODUCT_TRANSFERRED

LEDGER_RETENTION_DAYS = 90
ORPHAN_PRODUCT_AGE_SEC = 30 * 24 * 3600


def prune_orphan_products(catalog, orders, now: float) -> int:
    """Delete transfer-created products older than 30 days that no order references."""
    ordered = orders.ordered_product_ids()
    removed = 0
    for product in catalog.products_with_meta(PRODUCT_TRANSFERRED):
        created = float(product["meta"].get(PRODUCT_CREATED) or 0)
        if now - created <= ORPHAN_PRODUCT_AGE_SEC:
            continue
        if product["id"] in ordered:
            continue
        if catalog.delete(product["id"]):
            removed += 1
    return removed


def run_cleanup(services, now: float | None = None) -> dict:
    now = services.clock() if now is None else now
    as_dt = datetime.fromtimestamp(now, timezone.utc).replace(tzinfo=None)

    counts = {"ledger_entries": services.ledger.prune(LEDGER_RETENTION_DAYS, now=as_dt)}
    counts.update(services.gate.prune(now=now))
    counts["orphan_products"] = prune_orphan_products(services.catalog, services.orders, now)

    info(f"[cleanup] done: {counts}")
    return counts
