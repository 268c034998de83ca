# cross_site_cart/container.py
import time
from dataclasses import dataclass
from typing import Callable

import requests

from .clients.transfer import TransferClient
from .config import MemorySettings, ensure_encryption_key, settings_from_env
from .events import ORDER_COMPLETED, EventBus
from .services.collector import ProductCollector
from .services.gate import SecurityGate
from .services.ledger import TransferLedger
from .services.reconciler import ProductReconciler, download_image, order_line_provenance, pin_transferred_prices
from .services.relay import CompletionRelay
from .services.stores import MemoryCart, MemoryCatalog, MemoryOrders


@dataclass
class Services:
    """Everything a request handler needs, built once per app."""
    settings: MemorySettings
    bus: EventBus
    ledger: TransferLedger
    gate: SecurityGate
    catalog: MemoryCatalog
    cart: MemoryCart
    orders: MemoryOrders
    collector: ProductCollector
    reconciler: ProductReconciler
    client: TransferClient
    relay: CompletionRelay
    clock: Callable[[], float]


def build_services(settings=None, http=requests, clock: Callable[[], float] = time.time,
                   fetch_image=download_image, ledger=None, catalog=None) -> Services:
    if settings is None:
        settings = MemorySettings(settings_from_env())
    elif isinstance(settings, dict):
        settings = MemorySettings(settings)
    ensure_encryption_key(settings)

    bus = EventBus()
    ledger = ledger or TransferLedger(settings.get("database_url"), clock=clock)
    catalog = catalog or MemoryCatalog()
    cart = MemoryCart(catalog)
    orders = MemoryOrders()

    cart.on_before_totals(pin_transferred_prices)
    orders.on_create_line(order_line_provenance)

    relay = CompletionRelay(settings, http=http, clock=clock)
    bus.subscribe(ORDER_COMPLETED, relay.on_order_completed)

    return Services(
        settings=settings,
        bus=bus,
        ledger=ledger,
        gate=SecurityGate(settings, clock=clock),
        catalog=catalog,
        cart=cart,
        orders=orders,
        collector=ProductCollector(catalog, settings, clock=clock),
        reconciler=ProductReconciler(catalog, cart, settings, fetch_image=fetch_image, clock=clock),
        client=TransferClient(settings, ledger, bus, http=http, clock=clock),
        relay=relay,
        clock=clock,
    )
