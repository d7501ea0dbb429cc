"""Domain models, ports and the order lifecycle service.

This module contains the dataclasses that describe an order and its frozen
line items, the protocol definitions (ports) for the collaborators the
lifecycle depends on (catalog/inventory, order store, notifications), the
domain error hierarchy, and ``OrderService`` which validates carts, reserves
inventory, persists orders and drives the order status state machine.

The service never imports Django: persistence, transactions and transport
are injected so the same code runs against the ORM repository in production
and against in-process stubs in tests.
"""

import logging
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Callable, ContextManager, List, Optional, Protocol

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ORDER_NUMBER_PREFIX = "MN"


# ---- Enums ----
class OrderStatus(str, Enum):
    """Buyer-facing fulfillment stage of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Whether funds for an order have been captured, independent of status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    COD = "cod"
    ESEWA = "esewa"
    KHALTI = "khalti"


class ActorRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class NotificationEvent(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    SELLER_NEW_ORDER = "seller_new_order"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"


ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

# Timestamp column stamped when an order enters a status.
STATUS_STAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

APPROVED = "approved"


# ---- Errors ----
class OrderError(ValueError):
    """Base class for domain errors.

    ``str(err)`` is the machine-readable code (for example
    ``"INSUFFICIENT_INVENTORY"``) so callers can branch on it; ``message``
    carries a human-readable explanation. ``status_code`` is the HTTP status
    the API layer maps the error to.
    """

    status_code = 400

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(code)
        self.code = code
        self.message = message or code


class OrderValidationError(OrderError):
    status_code = 400


class OrderForbidden(OrderError):
    status_code = 403


class OrderNotFound(OrderError):
    status_code = 404


class OrderConflict(OrderError):
    status_code = 409


class InsufficientInventory(OrderConflict):
    status_code = 422

    def __init__(self, message: Optional[str] = None):
        super().__init__("INSUFFICIENT_INVENTORY", message)


class UpstreamUnavailable(OrderError):
    status_code = 503


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class ShippingAddress:
    """Shipping address snapshot captured at checkout time."""

    full_name: str
    phone: str
    address_line1: str
    city: str
    district: str
    address_line2: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass(frozen=True)
class CartItem:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class Product:
    """Catalog view of a product as seen at order time.

    Attributes:
        product_id: Catalog identifier.
        title: Display title, snapshotted into order lines.
        price: Live unit price.
        inventory: Units currently available.
        seller_id: Owner of the product.
        is_active: Whether the listing is live.
        verification_status: Moderation state; only ``"approved"`` products
            can be ordered.
    """

    product_id: str
    title: str
    price: Decimal
    inventory: int
    seller_id: str
    is_active: bool = True
    verification_status: str = APPROVED


@dataclass(frozen=True)
class OrderLine:
    """A line item frozen at order time.

    The dataclass is frozen because later catalog edits must never change
    what was sold.
    """

    product_id: str
    title: str
    unit_price: Decimal
    quantity: int
    seller_id: str

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Persistent identifier, or None before the order is stored.
        order_number: Human-readable ``MN-YYYY-NNNNNN`` code.
        buyer_id: Reference to the buyer.
        items: Frozen line items.
        shipping_address: Address snapshot.
        payment_method: One of ``PaymentMethod``.
        subtotal: Sum of line totals.
        shipping_cost: Shipping charged on top of the subtotal.
        total_amount: ``subtotal + shipping_cost``.
        reservation_id: Catalog reservation holding the order's stock.
    """

    id: Optional[uuid.UUID]
    order_number: str
    buyer_id: str
    items: List[OrderLine]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    subtotal: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    reservation_id: Optional[uuid.UUID] = None
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_transaction_id: Optional[str] = None
    tracking_code: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def seller_ids(self) -> List[str]:
        seen: List[str] = []
        for line in self.items:
            if line.seller_id not in seen:
                seen.append(line.seller_id)
        return seen

    def has_seller(self, seller_id: str) -> bool:
        return any(line.seller_id == seller_id for line in self.items)

    def for_seller(self, seller_id: str) -> "Order":
        """Return a copy restricted to the lines sold by ``seller_id``."""
        return replace(self, items=[line for line in self.items if line.seller_id == seller_id])

    def check_totals(self) -> None:
        """Raise if the stored totals disagree with the line items."""
        expected = sum((line.line_total for line in self.items), Decimal("0"))
        if self.subtotal != expected or self.total_amount != self.subtotal + self.shipping_cost:
            raise OrderValidationError("TOTAL_MISMATCH", "Order totals are inconsistent")


def to_money(value, code: str = "INVALID_AMOUNT") -> Decimal:
    """Coerce ``value`` to a two-decimal ``Decimal``.

    Floats are converted through ``str`` so ``2100.0`` becomes
    ``Decimal("2100.00")`` rather than its binary expansion.
    """
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise OrderValidationError(code, f"Invalid monetary amount: {value!r}")


def format_order_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year:04d}-{sequence:06d}"


def _coerce(enum_cls, value, code: str, message: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise OrderValidationError(code, message)


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Port describing the catalog/inventory collaborator.

    ``reserve`` must be all-or-nothing: either every line is decremented or
    nothing is. Both ``reserve`` and ``release`` are idempotent for a given
    reservation id so transports may retry them.
    """

    def get_product(self, product_id: str) -> Optional[Product]:
        raise NotImplementedError()

    def reserve(self, reservation_id: uuid.UUID, lines: List[OrderLine]) -> bool:
        raise NotImplementedError()

    def release(self, reservation_id: uuid.UUID) -> None:
        raise NotImplementedError()


class OrderStore(Protocol):
    """Port describing order persistence.

    Status and payment writes are conditional on the current stored value so
    concurrent writers cannot lose updates.
    """

    def next_order_number(self, prefix: str, year: int) -> str:
        raise NotImplementedError()

    def add(self, order: Order) -> Order:
        raise NotImplementedError()

    def get(self, order_id: uuid.UUID) -> Optional[Order]:
        raise NotImplementedError()

    def compare_and_set_status(self, order_id: uuid.UUID, expected: OrderStatus,
                               new: OrderStatus, **fields) -> bool:
        raise NotImplementedError()

    def record_payment(self, order_id: uuid.UUID, payment_status: PaymentStatus,
                       transaction_ref: Optional[str] = None,
                       unless: Optional[PaymentStatus] = None) -> bool:
        raise NotImplementedError()

    def list_page(self, *, buyer_id: Optional[str] = None, seller_id: Optional[str] = None,
                  offset: int = 0, limit: int = 20) -> tuple[List[Order], int]:
        raise NotImplementedError()


class Notifier(Protocol):
    """Best-effort notification dispatch; must never raise."""

    def dispatch(self, event: NotificationEvent, role: str, recipient_id: str, order: Order) -> None:
        raise NotImplementedError()


# ---- Domain service ----
class OrderService:
    """Domain service owning the order lifecycle.

    It validates carts against live catalog data, reserves inventory,
    persists orders with a sequential order number, and enforces the status
    state machine and its role-based authorization rules. Notifications are
    handed to the injected notifier after the transactional work is done and
    can never fail the operation that triggered them.
    """

    def __init__(
        self,
        catalog: CatalogPort,
        orders: OrderStore,
        notifier: Notifier,
        atomic: Callable[[], ContextManager] = nullcontext,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        number_prefix: str = ORDER_NUMBER_PREFIX,
    ):
        """Initialize the service with required dependencies.

        Args:
            catalog: CatalogPort used to read products and reserve stock.
            orders: OrderStore used to persist orders.
            notifier: Notifier for best-effort buyer/seller messages.
            atomic: Factory returning a context manager that wraps a unit of
                work in a storage transaction.
            clock: Returns the current aware datetime.
            number_prefix: Prefix of generated order numbers.
        """
        self.catalog = catalog
        self.orders = orders
        self.notifier = notifier
        self.atomic = atomic
        self.clock = clock
        self.number_prefix = number_prefix

    # -- creation --
    def create_order(
        self,
        buyer_id: str,
        cart_items: List[CartItem],
        shipping_address: ShippingAddress,
        payment_method,
        shipping_cost=Decimal("0"),
    ) -> Order:
        """Turn a cart into a persisted ``pending`` order.

        Raises:
            OrderValidationError: ``EMPTY_ORDER``, ``INVALID_QUANTITY``,
                ``INVALID_PAYMENT_METHOD``, ``INVALID_SHIPPING_COST``,
                ``PRODUCT_UNAVAILABLE`` or ``PRODUCT_NOT_APPROVED``.
            OrderNotFound: ``PRODUCT_NOT_FOUND``.
            InsufficientInventory: when a line exceeds available stock or the
                reservation is refused.
        """
        if not cart_items:
            raise OrderValidationError("EMPTY_ORDER", "Cart is empty")
        method = _coerce(PaymentMethod, payment_method, "INVALID_PAYMENT_METHOD",
                         "Valid payment method is required (esewa, khalti, or cod)")
        shipping = to_money(shipping_cost if shipping_cost is not None else 0, "INVALID_SHIPPING_COST")
        if shipping < 0:
            raise OrderValidationError("INVALID_SHIPPING_COST", "Shipping cost cannot be negative")

        lines = [self._resolve_line(item) for item in cart_items]
        subtotal = sum((line.line_total for line in lines), Decimal("0"))

        reservation_id = uuid.uuid4()
        if not self.catalog.reserve(reservation_id, lines):
            raise InsufficientInventory("Inventory changed while reserving stock")

        order = Order(
            id=None,
            order_number="",
            buyer_id=str(buyer_id),
            items=lines,
            shipping_address=shipping_address,
            payment_method=method,
            subtotal=subtotal,
            shipping_cost=shipping,
            total_amount=subtotal + shipping,
            reservation_id=reservation_id,
            created_at=self.clock(),
        )
        try:
            order.check_totals()
            with self.atomic():
                order.order_number = self.orders.next_order_number(self.number_prefix, order.created_at.year)
                order = self.orders.add(order)
        except Exception:
            logger.warning("order persistence failed, releasing reservation",
                           extra={"reservation_id": str(reservation_id), "buyer_id": str(buyer_id)})
            try:
                self.catalog.release(reservation_id)
            except Exception:
                logger.exception("reservation release failed", extra={"reservation_id": str(reservation_id)})
            raise

        logger.info("order created", extra={"order_number": order.order_number,
                                            "total_amount": str(order.total_amount)})
        self._notify_created(order)
        return order

    def _resolve_line(self, item: CartItem) -> OrderLine:
        if item.quantity < 1:
            raise OrderValidationError("INVALID_QUANTITY", "Quantity must be at least 1")
        product = self.catalog.get_product(item.product_id)
        if product is None:
            raise OrderNotFound("PRODUCT_NOT_FOUND", f"Product not found: {item.product_id}")
        if not product.is_active:
            raise OrderValidationError("PRODUCT_UNAVAILABLE", f"Product is not available: {product.title}")
        if product.verification_status != APPROVED:
            raise OrderValidationError("PRODUCT_NOT_APPROVED", f"Product is not approved: {product.title}")
        if product.inventory < item.quantity:
            raise InsufficientInventory(
                f"Insufficient inventory for {product.title}. Only {product.inventory} available."
            )
        return OrderLine(
            product_id=product.product_id,
            title=product.title,
            unit_price=to_money(product.price),
            quantity=item.quantity,
            seller_id=product.seller_id,
        )

    # -- reads --
    def load(self, order_id) -> Order:
        """Return the order or raise ``OrderNotFound``; no authorization."""
        try:
            oid = order_id if isinstance(order_id, uuid.UUID) else uuid.UUID(str(order_id))
        except ValueError:
            raise OrderValidationError("INVALID_ORDER_ID", "Invalid order ID")
        order = self.orders.get(oid)
        if order is None:
            raise OrderNotFound("ORDER_NOT_FOUND", "Order not found")
        return order

    def get_order(self, order_id, actor_id: str, actor_role) -> Order:
        order = self.load(order_id)
        role = self._role(actor_role)
        if role is ActorRole.ADMIN:
            return order
        if role is ActorRole.BUYER and order.buyer_id == str(actor_id):
            return order
        if role is ActorRole.SELLER and order.has_seller(str(actor_id)):
            return order
        raise OrderForbidden("UNAUTHORIZED", "Unauthorized to view this order")

    def list_orders(self, actor_id: str, actor_role, page: int = 1, page_size: int = 10):
        """Return ``(orders, total_count)`` visible to the actor, newest first."""
        role = self._role(actor_role)
        page = max(1, int(page))
        page_size = min(max(1, int(page_size)), 100)
        offset = (page - 1) * page_size
        if role is ActorRole.BUYER:
            return self.orders.list_page(buyer_id=str(actor_id), offset=offset, limit=page_size)
        if role is ActorRole.SELLER:
            return self.orders.list_page(seller_id=str(actor_id), offset=offset, limit=page_size)
        return self.orders.list_page(offset=offset, limit=page_size)

    # -- state machine --
    def update_order_status(self, order_id, new_status, actor_id: str, actor_role,
                            tracking_code: Optional[str] = None) -> Order:
        """Move an order to ``new_status`` on behalf of an actor.

        Authorization is checked before the transition table so that a buyer
        touching someone else's order gets ``UNAUTHORIZED`` regardless of the
        order's state.

        Raises:
            OrderValidationError: ``INVALID_STATUS`` for unknown statuses.
            OrderNotFound: ``ORDER_NOT_FOUND``.
            OrderForbidden: ``UNAUTHORIZED``.
            OrderConflict: ``INVALID_STATUS_TRANSITION`` or
                ``CONCURRENT_UPDATE``.
        """
        target = _coerce(OrderStatus, new_status, "INVALID_STATUS",
                         "Valid status is required (pending, confirmed, shipped, delivered, cancelled)")
        order = self.load(order_id)
        self._authorize(order, target, str(actor_id), actor_role)
        return self._transition(order, target, tracking_code=tracking_code)

    def _role(self, actor_role) -> ActorRole:
        try:
            return actor_role if isinstance(actor_role, ActorRole) else ActorRole(actor_role)
        except ValueError:
            raise OrderForbidden("UNAUTHORIZED", f"Unknown role: {actor_role!r}")

    def _authorize(self, order: Order, target: OrderStatus, actor_id: str, actor_role) -> None:
        role = self._role(actor_role)
        if role is ActorRole.ADMIN:
            return
        if role is ActorRole.BUYER:
            if order.buyer_id != actor_id:
                raise OrderForbidden("UNAUTHORIZED", "Unauthorized to update this order")
            if target is not OrderStatus.CANCELLED:
                raise OrderForbidden("UNAUTHORIZED", "Buyers can only cancel orders")
            return
        if role is ActorRole.SELLER and order.has_seller(actor_id):
            return
        raise OrderForbidden("UNAUTHORIZED", "Unauthorized to update this order")

    def _transition(self, order: Order, target: OrderStatus, tracking_code: Optional[str] = None) -> Order:
        if target not in ALLOWED_TRANSITIONS[order.status]:
            raise OrderConflict(
                "INVALID_STATUS_TRANSITION",
                f"Invalid status transition from {order.status.value} to {target.value}",
            )
        # stamps are never earlier than creation, even with a skewed clock
        now = max(self.clock(), order.created_at)
        fields = {STATUS_STAMPS[target]: now}
        if target is OrderStatus.SHIPPED:
            fields["tracking_code"] = tracking_code or order.order_number

        previous = order.status
        with self.atomic():
            if not self.orders.compare_and_set_status(order.id, previous, target, **fields):
                raise OrderConflict("CONCURRENT_UPDATE", "Order was modified concurrently, retry")

        if target is OrderStatus.CANCELLED:
            self._restore_inventory(order, previous)

        logger.info("order status changed", extra={"order_number": order.order_number,
                                                   "from_status": previous.value, "to_status": target.value})
        updated = self.orders.get(order.id)
        self._notify_transition(updated)
        return updated

    def _restore_inventory(self, order: Order, previous: OrderStatus) -> None:
        if order.reservation_id is None:
            return
        try:
            self.catalog.release(order.reservation_id)
        except Exception:
            logger.error("inventory release failed, reverting cancellation",
                         extra={"order_number": order.order_number})
            with self.atomic():
                self.orders.compare_and_set_status(order.id, OrderStatus.CANCELLED, previous, cancelled_at=None)
            raise

    # -- payment hooks --
    def confirm_payment(self, order_id, transaction_ref: str) -> Order:
        """Record a captured payment and confirm a pending order.

        Must run inside the caller's unit of work so the attempt and order
        updates commit together.
        """
        order = self.load(order_id)
        self.orders.record_payment(order.id, PaymentStatus.COMPLETED, transaction_ref)
        if order.status is OrderStatus.PENDING:
            now = max(self.clock(), order.created_at)
            if not self.orders.compare_and_set_status(order.id, OrderStatus.PENDING, OrderStatus.CONFIRMED,
                                                      confirmed_at=now):
                logger.info("order left pending before payment confirmation",
                            extra={"order_number": order.order_number})
        else:
            logger.info("payment completed for non-pending order",
                        extra={"order_number": order.order_number, "status": order.status.value})
        return self.orders.get(order.id)

    def fail_payment(self, order_id) -> Order:
        """Mark the order's payment failed; the order status is left alone."""
        order = self.load(order_id)
        self.orders.record_payment(order.id, PaymentStatus.FAILED, unless=PaymentStatus.COMPLETED)
        return self.orders.get(order.id)

    # -- notifications --
    def _notify_created(self, order: Order) -> None:
        self.notifier.dispatch(NotificationEvent.ORDER_CONFIRMATION, ActorRole.BUYER.value, order.buyer_id, order)
        for seller_id in order.seller_ids():
            self.notifier.dispatch(NotificationEvent.SELLER_NEW_ORDER, ActorRole.SELLER.value, seller_id,
                                   order.for_seller(seller_id))

    def _notify_transition(self, order: Order) -> None:
        if order.status is OrderStatus.SHIPPED:
            self.notifier.dispatch(NotificationEvent.ORDER_SHIPPED, ActorRole.BUYER.value, order.buyer_id, order)
        elif order.status is OrderStatus.DELIVERED:
            self.notifier.dispatch(NotificationEvent.ORDER_DELIVERED, ActorRole.BUYER.value, order.buyer_id, order)
