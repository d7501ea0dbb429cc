"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the orders API
and the read model returned to clients and sent to the notification
service. Wire names are camelCase; Python attributes stay snake_case.
"""

import re
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .domain import CartItem, Order, ShippingAddress

PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItemIn(CamelModel):
    """Input schema for a single cart line.

    Attributes:
        product_id: Catalog identifier (1-64 chars: letters, digits, '_' and '-').
        quantity: Units requested; range checks belong to the domain.
    """

    product_id: str = Field(min_length=1, max_length=64)
    quantity: int

    @field_validator("product_id")
    @classmethod
    def validate_product_id(cls, v: str) -> str:
        if not PRODUCT_ID_RE.match(v):
            raise ValueError("Invalid product ID")
        return v


class ShippingAddressIn(CamelModel):
    full_name: str = Field(min_length=1, max_length=120)
    phone: str = Field(min_length=6, max_length=20)
    address_line1: str = Field(min_length=1, max_length=255)
    address_line2: Optional[str] = Field(default=None, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    district: str = Field(min_length=1, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)

    def to_domain(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump())


class CreateOrderDTO(CamelModel):
    """Schema for creating an order.

    Attributes:
        buyer_id: Reference of the buyer placing the order.
        cart_items: List of ``CartItemIn``; emptiness is rejected by the
            domain with ``EMPTY_ORDER``.
        shipping_address: Address snapshot.
        payment_method: ``cod``, ``esewa`` or ``khalti`` (normalized to
            lowercase, checked by the domain).
        shipping_cost: Optional shipping charge.
    """

    buyer_id: str = Field(min_length=1, max_length=64)
    cart_items: List[CartItemIn] = Field(default_factory=list)
    shipping_address: ShippingAddressIn
    payment_method: str
    shipping_cost: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)

    @field_validator("payment_method")
    @classmethod
    def normalize_payment_method(cls, v: str) -> str:
        return v.strip().lower()

    def cart(self) -> List[CartItem]:
        return [CartItem(product_id=i.product_id, quantity=i.quantity) for i in self.cart_items]


class UpdateStatusDTO(CamelModel):
    status: str
    tracking_code: Optional[str] = Field(default=None, max_length=128)

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.strip().lower()


class OrderLineOut(CamelModel):
    product_id: str
    title: str
    unit_price: Decimal
    quantity: int
    seller_id: str


class OrderReadDTO(CamelModel):
    """Read model of an order as exposed by the API."""

    id: uuid.UUID
    order_number: str
    buyer_id: str
    items: List[OrderLineOut]
    shipping_address: dict
    payment_method: str
    payment_status: str
    payment_transaction_id: Optional[str] = None
    subtotal: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    status: str
    tracking_code: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        addr = order.shipping_address
        return cls(
            id=order.id,
            order_number=order.order_number,
            buyer_id=order.buyer_id,
            items=[
                OrderLineOut(product_id=l.product_id, title=l.title, unit_price=l.unit_price,
                             quantity=l.quantity, seller_id=l.seller_id)
                for l in order.items
            ],
            shipping_address={
                "fullName": addr.full_name,
                "phone": addr.phone,
                "addressLine1": addr.address_line1,
                "addressLine2": addr.address_line2,
                "city": addr.city,
                "district": addr.district,
                "postalCode": addr.postal_code,
            },
            payment_method=order.payment_method.value,
            payment_status=order.payment_status.value,
            payment_transaction_id=order.payment_transaction_id,
            subtotal=order.subtotal,
            shipping_cost=order.shipping_cost,
            total_amount=order.total_amount,
            status=order.status.value,
            tracking_code=order.tracking_code,
            created_at=order.created_at,
            confirmed_at=order.confirmed_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
        )
