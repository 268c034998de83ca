import threading
from collections import defaultdict
from typing import Callable

from .utils.logger import error

TRANSFER_INITIATED = "transfer_initiated"
TRANSFER_COMPLETED = "transfer_completed"
TRANSFER_FAILED = "transfer_failed"
ORDER_COMPLETED = "order_completed"
ORDER_COMPLETED_NOTIFICATION = "order_completed_notification"


class EventBus:
    """Named domain events with plain-callable handlers."""

    def __init__(self):
        self._handlers: dict[str, list[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: Callable) -> Callable:
        with self._lock:
            self._handlers[name].append(handler)
        return handler

    def publish(self, name: str, **data):
        with self._lock:
            handlers = list(self._handlers.get(name, []))
        for handler in handlers:
            try:
                handler(**data)
            except Exception as e:
                error(f"[events] handler {getattr(handler, '__name__', handler)} failed on {name}: {e}")
