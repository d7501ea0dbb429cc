"""Repository layer for persisting orders.

This module maps the domain ``Order`` dataclasses onto the Django ORM
models. It keeps a thin interface so the domain layer is not coupled to ORM
details, and it is where the storage-level atomic primitives live: the
per-year order sequence increment and the compare-and-set status writes.
"""

import uuid
from dataclasses import asdict
from typing import List, Optional

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .domain import (
    Order,
    OrderLine,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ShippingAddress,
    format_order_number,
)
from .models import OrderItemModel, OrderModel, OrderSequence


def _to_domain(obj: OrderModel) -> Order:
    return Order(
        id=obj.id,
        order_number=obj.order_number,
        buyer_id=obj.buyer_id,
        items=[
            OrderLine(
                product_id=it.product_id,
                title=it.title,
                unit_price=it.unit_price,
                quantity=it.quantity,
                seller_id=it.seller_id,
            )
            for it in obj.items.all()
        ],
        shipping_address=ShippingAddress(**obj.shipping_address),
        payment_method=PaymentMethod(obj.payment_method),
        subtotal=obj.subtotal,
        shipping_cost=obj.shipping_cost,
        total_amount=obj.total_amount,
        reservation_id=obj.reservation_id,
        status=OrderStatus(obj.status),
        payment_status=PaymentStatus(obj.payment_status),
        payment_transaction_id=obj.payment_transaction_id,
        tracking_code=obj.tracking_code,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
        confirmed_at=obj.confirmed_at,
        shipped_at=obj.shipped_at,
        delivered_at=obj.delivered_at,
        cancelled_at=obj.cancelled_at,
    )


class OrderRepository:
    """Repository that persists Order domain objects using Django ORM."""

    def next_order_number(self, prefix: str, year: int) -> str:
        """Allocate the next order number for ``year``.

        The counter row is created on first use inside a savepoint so a
        concurrent creator's IntegrityError only rolls back that block. The
        increment itself is a single ``UPDATE ... SET last_value =
        last_value + 1`` which takes the row lock until the surrounding
        transaction commits, so two writers never read the same value.
        """
        with transaction.atomic():
            try:
                with transaction.atomic():
                    OrderSequence.objects.create(year=year, last_value=0)
            except IntegrityError:
                pass  # row already exists
            OrderSequence.objects.filter(year=year).update(last_value=F("last_value") + 1)
            seq = OrderSequence.objects.values_list("last_value", flat=True).get(year=year)
        return format_order_number(prefix, year, seq)

    def add(self, order: Order) -> Order:
        """Persist a new order and its line items, returning the stored copy."""
        with transaction.atomic():
            obj = OrderModel.objects.create(
                order_number=order.order_number,
                buyer_id=order.buyer_id,
                shipping_address=asdict(order.shipping_address),
                payment_method=order.payment_method.value,
                payment_status=order.payment_status.value,
                subtotal=order.subtotal,
                shipping_cost=order.shipping_cost,
                total_amount=order.total_amount,
                status=order.status.value,
                reservation_id=order.reservation_id,
                created_at=order.created_at,
                updated_at=order.created_at,
            )
            OrderItemModel.objects.bulk_create([
                OrderItemModel(
                    order=obj,
                    position=i,
                    product_id=line.product_id,
                    title=line.title,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                    seller_id=line.seller_id,
                )
                for i, line in enumerate(order.items)
            ])
        return self.get(obj.id)

    def get(self, order_id: uuid.UUID) -> Optional[Order]:
        obj = OrderModel.objects.prefetch_related("items").filter(id=order_id).first()
        return _to_domain(obj) if obj else None

    def compare_and_set_status(self, order_id: uuid.UUID, expected: OrderStatus,
                               new: OrderStatus, **fields) -> bool:
        """Set ``status`` to ``new`` only if it is still ``expected``.

        Returns:
            bool: True when exactly one row was updated.
        """
        updated = OrderModel.objects.filter(id=order_id, status=expected.value).update(
            status=new.value, updated_at=timezone.now(), **fields
        )
        return updated == 1

    def record_payment(self, order_id: uuid.UUID, payment_status: PaymentStatus,
                       transaction_ref: Optional[str] = None,
                       unless: Optional[PaymentStatus] = None) -> bool:
        qs = OrderModel.objects.filter(id=order_id)
        if unless is not None:
            qs = qs.exclude(payment_status=unless.value)
        changes = {"payment_status": payment_status.value, "updated_at": timezone.now()}
        if transaction_ref is not None:
            changes["payment_transaction_id"] = transaction_ref
        return qs.update(**changes) == 1

    def list_page(self, *, buyer_id: Optional[str] = None, seller_id: Optional[str] = None,
                  offset: int = 0, limit: int = 20) -> tuple[List[Order], int]:
        qs = OrderModel.objects.order_by("-created_at")
        if buyer_id is not None:
            qs = qs.filter(buyer_id=buyer_id)
        if seller_id is not None:
            qs = qs.filter(items__seller_id=seller_id).distinct()
        total = qs.count()
        page = qs.prefetch_related("items")[offset:offset + limit]
        return [_to_domain(o) for o in page], total
