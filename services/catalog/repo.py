"""SQLAlchemy repository for the product catalog and its inventory ledger.

Each product row carries its live price, moderation state, available
``inventory`` and ``purchase_count``. Stock only moves through
reservations: ``reserve`` decrements every product of a reservation with
conditional updates in one transaction, and ``release`` gives the exact same
quantities back. Both are idempotent per reservation id, so the web tier can
retry them after a lost response.

Database connection parameters are configured via ``CATALOG_DATABASE_URL``
or the ``DB_*`` variables.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    JSON,
    Numeric,
    String,
    create_engine,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "catalog-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "catalog")
DB_USER = os.getenv("DB_USER", "catalog_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "catalog-pass")

DATABASE_URL = os.getenv(
    "CATALOG_DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)


class Base(DeclarativeBase):
    pass


class Product(Base):
    """A sellable product and its stock.

    Attributes:
        product_id: Catalog identifier used as primary key.
        price: Live unit price.
        inventory: Units available; never negative.
        purchase_count: Order lines that reserved this product, net of releases.
        verification_status: Moderation state; ``approved`` products can be ordered.
    """

    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("inventory >= 0", name="products_inventory_non_negative"),
        CheckConstraint("purchase_count >= 0", name="products_purchase_count_non_negative"),
    )

    product_id = mapped_column(String(64), primary_key=True)
    title = mapped_column(String(255), nullable=False)
    price = mapped_column(Numeric(12, 2), nullable=False)
    inventory = mapped_column(Integer, nullable=False, default=0)
    purchase_count = mapped_column(Integer, nullable=False, default=0)
    seller_id = mapped_column(String(64), nullable=False)
    is_active = mapped_column(Boolean, nullable=False, default=True)
    verification_status = mapped_column(String(16), nullable=False, default="pending")


class Reservation(Base):
    """Record of one all-or-nothing stock reservation.

    ``lines`` holds the aggregated ``[product_id, quantity, line_count]``
    triples that were applied, which is exactly what a release restores.
    """

    __tablename__ = "reservations"

    reservation_id = mapped_column(String(36), primary_key=True)
    lines = mapped_column(JSON, nullable=False)
    released = mapped_column(Boolean, nullable=False, default=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False,
                               default=lambda: datetime.now(timezone.utc))
    released_at = mapped_column(DateTime(timezone=True), nullable=True)


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    """Context manager that yields a SQLAlchemy session.

    The session is automatically closed when exiting the context.

    Yields:
        Session: Active SQLAlchemy session connected to the database.
    """
    with Session(engine) as s:
        yield s


def _aggregate(items: list[tuple[str, int]]) -> list[tuple[str, int, int]]:
    totals: dict[str, list[int]] = {}
    for product_id, qty in items:
        agg = totals.setdefault(product_id, [0, 0])
        agg[0] += qty
        agg[1] += 1
    # fixed order so concurrent reservations lock rows in the same sequence
    return [(pid, qty, count) for pid, (qty, count) in sorted(totals.items())]


class CatalogRepo:
    """Repository class for product and inventory operations."""

    def get(self, product_id: str) -> Optional[dict]:
        with get_session() as s:
            obj = s.get(Product, product_id)
            return _as_dict(obj) if obj else None

    def upsert(self, product_id: str, *, title: str, price: Decimal, inventory: int, seller_id: str,
               is_active: bool = True, verification_status: str = "pending") -> dict:
        """Create or replace a product; ``purchase_count`` is preserved."""
        with get_session() as s:
            obj = s.get(Product, product_id) or Product(product_id=product_id, purchase_count=0)
            obj.title = title
            obj.price = price
            obj.inventory = inventory
            obj.seller_id = seller_id
            obj.is_active = is_active
            obj.verification_status = verification_status
            obj = s.merge(obj)
            s.commit()
            return _as_dict(obj)

    def reserve(self, reservation_id: str, items: list[tuple[str, int]]) -> bool:
        """Atomically reserve quantities for every product of a reservation.

        Each product is decremented by the sum of its lines with
        ``UPDATE ... WHERE inventory >= :qty``; a single zero-row update rolls
        the whole reservation back. A reservation id that already exists is
        reported as reserved without touching stock again.

        Args:
            reservation_id: Client-generated reservation id.
            items: List of (product_id, quantity) lines.

        Returns:
            bool: True if all items were reserved, False if any had
                insufficient stock (no changes made in that case).
        """
        lines = _aggregate(items)
        with get_session() as s:
            if s.get(Reservation, reservation_id) is not None:
                return True
            for product_id, qty, count in lines:
                res = s.execute(
                    update(Product)
                    .where(Product.product_id == product_id, Product.inventory >= qty)
                    .values(inventory=Product.inventory - qty,
                            purchase_count=Product.purchase_count + count)
                )
                if res.rowcount != 1:
                    s.rollback()
                    return False
            s.add(Reservation(reservation_id=reservation_id, lines=[list(line) for line in lines]))
            try:
                s.commit()
            except IntegrityError:
                # a concurrent retry of the same reservation won
                s.rollback()
                return s.get(Reservation, reservation_id) is not None
            return True

    def release(self, reservation_id: str) -> Optional[bool]:
        """Restore the stock of a reservation.

        Returns:
            Optional[bool]: None for an unknown reservation, False when it was
                already released, True when stock was restored now.
        """
        with get_session() as s:
            rec = s.query(Reservation).filter(Reservation.reservation_id == reservation_id) \
                .with_for_update().one_or_none()
            if rec is None:
                return None
            if rec.released:
                return False
            for product_id, qty, count in rec.lines:
                s.execute(
                    update(Product)
                    .where(Product.product_id == product_id)
                    .values(inventory=Product.inventory + qty,
                            purchase_count=Product.purchase_count - count)
                )
            rec.released = True
            rec.released_at = datetime.now(timezone.utc)
            s.commit()
            return True


def _as_dict(obj: Product) -> dict:
    return {
        "product_id": obj.product_id,
        "title": obj.title,
        "price": obj.price,
        "inventory": obj.inventory,
        "purchase_count": obj.purchase_count,
        "seller_id": obj.seller_id,
        "is_active": obj.is_active,
        "verification_status": obj.verification_status,
    }
