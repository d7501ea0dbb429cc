"""In-process stub adapters for the orders domain ports.

These stubs implement ``CatalogPort`` and ``NotificationSink`` without any
network calls. They are intended for unit tests and local development where
deterministic behavior is useful and the catalog and notification services
are not running.
"""

import threading
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .domain import CatalogPort, NotificationEvent, Order, OrderLine, Product
from .notifications import Recipient


class InMemoryCatalog(CatalogPort):
    """Stub implementation of ``CatalogPort``.

    Products live in a dict guarded by a lock; ``reserve`` checks every
    aggregated product total before decrementing anything, so a refused
    reservation leaves the ledger untouched. Reservations are remembered so
    ``reserve`` and ``release`` are idempotent per reservation id, like the
    real catalog service.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._products: Dict[str, Product] = {}
        self._purchases: Dict[str, int] = {}
        self._reservations: Dict[uuid.UUID, List[Tuple[str, int, int]]] = {}
        self._released: set = set()

    def add_product(self, product_id: str, price, inventory: int, seller_id: str = "seller-1",
                    title: Optional[str] = None, is_active: bool = True,
                    verification_status: str = "approved") -> Product:
        product = Product(
            product_id=product_id,
            title=title or product_id,
            price=Decimal(str(price)),
            inventory=inventory,
            seller_id=seller_id,
            is_active=is_active,
            verification_status=verification_status,
        )
        with self._lock:
            self._products[product_id] = product
            self._purchases.setdefault(product_id, 0)
        return product

    def inventory(self, product_id: str) -> int:
        return self._products[product_id].inventory

    def purchase_count(self, product_id: str) -> int:
        return self._purchases.get(product_id, 0)

    def clear(self) -> None:
        with self._lock:
            self._products.clear()
            self._purchases.clear()
            self._reservations.clear()
            self._released.clear()

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def reserve(self, reservation_id: uuid.UUID, lines: List[OrderLine]) -> bool:
        totals: Dict[str, List[int]] = {}
        for line in lines:
            agg = totals.setdefault(line.product_id, [0, 0])
            agg[0] += line.quantity
            agg[1] += 1
        with self._lock:
            if reservation_id in self._reservations:
                return True
            for pid, (qty, _) in totals.items():
                product = self._products.get(pid)
                if product is None or product.inventory < qty:
                    return False
            for pid, (qty, count) in totals.items():
                product = self._products[pid]
                self._products[pid] = replace(product, inventory=product.inventory - qty)
                self._purchases[pid] = self._purchases.get(pid, 0) + count
            self._reservations[reservation_id] = [(pid, qty, count) for pid, (qty, count) in totals.items()]
            return True

    def release(self, reservation_id: uuid.UUID) -> None:
        with self._lock:
            if reservation_id in self._released or reservation_id not in self._reservations:
                return
            for pid, qty, count in self._reservations[reservation_id]:
                product = self._products[pid]
                self._products[pid] = replace(product, inventory=product.inventory + qty)
                self._purchases[pid] = self._purchases.get(pid, 0) - count
            self._released.add(reservation_id)


class RecordingNotificationSink:
    """Stub sink that records every message it receives.

    Setting ``fail`` makes every send raise, which is how tests check that
    notification failures never reach the caller.
    """

    def __init__(self):
        self.sent: List[Tuple[NotificationEvent, Recipient, Order]] = []
        self.fail = False

    def send(self, event: NotificationEvent, recipient: Recipient, order: Order) -> None:
        if self.fail:
            raise ConnectionError("notification service unreachable")
        self.sent.append((event, recipient, order))

    def events(self) -> List[Tuple[str, str, str]]:
        return [(e.value, r.role, r.id) for e, r, _ in self.sent]

    def clear(self) -> None:
        self.sent.clear()
        self.fail = False
