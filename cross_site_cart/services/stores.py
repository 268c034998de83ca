# cross_site_cart/services/stores.py
"""
In-memory catalog, cart and order stores.

These stand in for the host e-commerce platform. A deployment against a real
platform provides adapters exposing the same methods; products, cart lines and
orders are plain dicts throughout.
"""
import copy
import hashlib
import itertools
import threading
from collections import OrderedDict
from decimal import Decimal
from typing import Callable, Optional

from ..utils.hash import canonical_json

# =========================================================
# Catalog
# =========================================================

PRODUCT_DEFAULTS = {
    "type": "simple",          # simple | variable | variation
    "parent_id": None,
    "name": "",
    "sku": "",
    "price": None,
    "regular_price": None,
    "sale_price": None,
    "description": "",
    "short_description": "",
    "weight": "",
    "dimensions": {"length": "", "width": "", "height": ""},
    "meta": {},
    "image_id": None,
    "gallery_image_ids": [],
    "categories": [],
    "tags": [],
    "attributes": {},
    "status": "publish",
    "catalog_visibility": "visible",
    "virtual": False,
    "manage_stock": False,
    "stock_quantity": None,
    "stock_status": "instock",
    "created_at": None,
}


class MemoryCatalog:
    def __init__(self):
        self._products: dict[int, dict] = {}
        self._attachments: dict[int, dict] = {}
        self._terms: dict[str, dict[str, int]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    # ---- products ----

    def create(self, **fields) -> int:
        with self._lock:
            pid = next(self._ids)
            product = copy.deepcopy(PRODUCT_DEFAULTS)
            product.update(copy.deepcopy(fields))
            product["id"] = pid
            self._products[pid] = product
            return pid

    def get(self, pid) -> Optional[dict]:
        with self._lock:
            product = self._products.get(int(pid)) if pid is not None else None
            return copy.deepcopy(product) if product else None

    def save(self, pid: int, **fields):
        with self._lock:
            if pid not in self._products:
                raise KeyError(pid)
            self._products[pid].update(copy.deepcopy(fields))

    def delete(self, pid: int) -> bool:
        with self._lock:
            return self._products.pop(pid, None) is not None

    def find_by_sku(self, sku: str) -> Optional[int]:
        if not sku:
            return None
        with self._lock:
            for pid, p in self._products.items():
                if p.get("sku") == sku:
                    return pid
        return None

    def products_with_meta(self, key: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._products.values() if key in (p.get("meta") or {})]

    def is_purchasable(self, pid: int) -> bool:
        p = self.get(pid)
        return bool(p) and p.get("status") == "publish" and p.get("price") not in (None, "")

    # ---- media ----

    def add_attachment(self, url: str, alt: str = "", title: str = "", caption: str = "",
                       content: bytes | None = None) -> int:
        with self._lock:
            aid = next(self._ids)
            self._attachments[aid] = {
                "id": aid, "url": url, "alt": alt or "", "title": title or "",
                "caption": caption or "", "size": len(content or b""),
            }
            return aid

    def get_attachment(self, aid) -> Optional[dict]:
        with self._lock:
            a = self._attachments.get(aid)
            return dict(a) if a else None

    def attach_image(self, pid: int, url: str, content: bytes, alt: str = "", title: str = "",
                     caption: str = "", featured: bool = False) -> int:
        aid = self.add_attachment(url, alt, title, caption, content)
        with self._lock:
            product = self._products[pid]
            if featured:
                product["image_id"] = aid
            else:
                product["gallery_image_ids"].append(aid)
        return aid

    # ---- taxonomy ----

    def set_terms(self, pid: int, taxonomy: str, names: list[str]) -> list[str]:
        """Assign terms by name, creating missing ones."""
        names = [n for n in (names or []) if n]
        with self._lock:
            terms = self._terms.setdefault(taxonomy, {})
            for name in names:
                if name not in terms:
                    terms[name] = next(self._ids)
            field = "categories" if taxonomy == "product_cat" else "tags"
            self._products[pid][field] = list(names)
        return names

    def term_names(self, taxonomy: str) -> list[str]:
        with self._lock:
            return list(self._terms.get(taxonomy, {}))


# =========================================================
# Cart
# =========================================================

class MemoryCart:
    def __init__(self, catalog: MemoryCatalog):
        self.catalog = catalog
        self._lines: "OrderedDict[str, dict]" = OrderedDict()
        self._notices: list[str] = []
        self._before_totals: list[Callable] = []
        self._lock = threading.RLock()

    def on_before_totals(self, hook: Callable):
        self._before_totals.append(hook)

    def empty(self):
        with self._lock:
            self._lines.clear()

    def add(self, product_id: int, quantity: int, variation_id: int | None = None,
            variation: dict | None = None, item_data: dict | None = None) -> Optional[str]:
        product = self.catalog.get(product_id)
        if not product:
            self._notices.append("Product does not exist.")
            return None
        if quantity <= 0:
            self._notices.append("Quantity must be greater than zero.")
            return None
        if not self.catalog.is_purchasable(product_id):
            self._notices.append(f"Sorry, \"{product['name']}\" cannot be purchased.")
            return None
        if product.get("stock_status") == "outofstock" or (
            product.get("manage_stock") and (product.get("stock_quantity") or 0) < quantity
        ):
            self._notices.append(f"Not enough \"{product['name']}\" in stock.")
            return None

        key = hashlib.md5(canonical_json([product_id, variation_id, variation or {}, item_data or {}]).encode()).hexdigest()
        with self._lock:
            if key in self._lines:
                self._lines[key]["quantity"] += quantity
            else:
                self._lines[key] = {
                    "key": key,
                    "product_id": product_id,
                    "variation_id": variation_id,
                    "variation": dict(variation or {}),
                    "quantity": quantity,
                    "data": dict(item_data or {}),
                    "price": Decimal(str(product["price"])),
                    "line_total": None,
                }
        return key

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            return self._lines.get(key)

    def remove(self, key: str) -> Optional[dict]:
        with self._lock:
            return self._lines.pop(key, None)

    def lines(self) -> list[dict]:
        with self._lock:
            return list(self._lines.values())

    def calculate_totals(self) -> Decimal:
        with self._lock:
            for line in self._lines.values():
                product = self.catalog.get(line["product_id"])
                if product and product.get("price") not in (None, ""):
                    line["price"] = Decimal(str(product["price"]))
            for hook in self._before_totals:
                hook(self)
            for line in self._lines.values():
                line["line_total"] = line["price"] * line["quantity"]
            return self.total()

    def count(self) -> int:
        with self._lock:
            return sum(line["quantity"] for line in self._lines.values())

    def total(self) -> Decimal:
        with self._lock:
            return sum((line["line_total"] or line["price"] * line["quantity"] for line in self._lines.values()),
                       Decimal("0"))

    def is_empty(self) -> bool:
        return not self._lines

    def notices(self) -> list[str]:
        return list(self._notices)

    def clear_notices(self):
        self._notices.clear()


# =========================================================
# Orders
# =========================================================

class MemoryOrders:
    def __init__(self):
        self._orders: dict[int, dict] = {}
        self._ids = itertools.count(1000)
        self._line_hooks: list[Callable] = []
        self._lock = threading.RLock()

    def on_create_line(self, hook: Callable):
        """hook(cart_line) -> dict of meta copied onto the order line"""
        self._line_hooks.append(hook)

    def create_from_cart(self, cart: MemoryCart, billing_email: str = "",
                         billing_first_name: str = "", billing_last_name: str = "") -> dict:
        total = cart.calculate_totals()
        lines = []
        for cl in cart.lines():
            meta = {}
            for hook in self._line_hooks:
                meta.update(hook(cl) or {})
            lines.append({
                "product_id": cl["product_id"],
                "variation_id": cl["variation_id"],
                "quantity": cl["quantity"],
                "total": cl["line_total"],
                "meta": meta,
            })
        with self._lock:
            oid = next(self._ids)
            order = {
                "id": oid,
                "status": "processing",
                "total": total,
                "billing_email": billing_email,
                "billing_first_name": billing_first_name,
                "billing_last_name": billing_last_name,
                "lines": lines,
            }
            self._orders[oid] = order
        cart.empty()
        return copy.deepcopy(order)

    def get(self, oid) -> Optional[dict]:
        with self._lock:
            o = self._orders.get(int(oid))
            return copy.deepcopy(o) if o else None

    def set_status(self, oid: int, status: str) -> Optional[dict]:
        with self._lock:
            if oid not in self._orders:
                return None
            self._orders[oid]["status"] = status
            return copy.deepcopy(self._orders[oid])

    def iter_lines(self, oid: int):
        order = self.get(oid)
        for line in (order or {}).get("lines", []):
            yield line

    def ordered_product_ids(self) -> set[int]:
        with self._lock:
            return {line["product_id"] for o in self._orders.values() for line in o["lines"]}
