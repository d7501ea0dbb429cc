"""Payment reconciliation.

``PaymentService`` opens payment attempts against the gateway selected by
an order's payment method and reconciles provider confirmations with the
order. It is the only writer of payment attempts; order changes go through
``OrderService.confirm_payment`` / ``fail_payment`` so the order state
machine stays in one place.

Reconciliation is idempotent: an attempt leaves ``pending`` exactly once,
through a compare-and-set, in the same unit of work as the order update.
Duplicate or concurrent callbacks for the same attempt get the stored result
and never call the provider twice.

The most recent attempt of an order governs reconciliation. Any attempt that
is captured confirms the order, but a failure reported for a superseded
attempt is only recorded on that attempt and leaves the order alone.
"""

import logging
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, ContextManager, Mapping, Optional, Protocol

from apps.orders.domain import (
    OrderConflict,
    OrderNotFound,
    OrderService,
    OrderStatus,
    OrderValidationError,
    PaymentMethod,
    PaymentStatus,
    UpstreamUnavailable,
    to_money,
)

from .gateways import GatewayError, GatewayOutcome, PaymentGateway

logger = logging.getLogger(__name__)


class AttemptStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass
class PaymentAttempt:
    """One try at paying an order through a gateway.

    Attributes:
        id: Persistent identifier, or None before the attempt is stored.
        order_id: Owning order.
        gateway: ``esewa`` or ``khalti``.
        transaction_ref: Gateway session reference, unique per gateway.
        amount: Amount the attempt was opened for (the order total).
        status: Lifecycle state; leaves ``pending`` at most once.
        gateway_response: Opaque provider payload.
        error_message: Failure reason when ``status`` is ``failed``.
    """

    id: Optional[uuid.UUID]
    order_id: uuid.UUID
    gateway: str
    transaction_ref: str
    amount: Decimal
    status: AttemptStatus = AttemptStatus.PENDING
    gateway_response: dict = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentSession:
    payment_url: str
    transaction_ref: str
    gateway: str


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    transaction_ref: str
    amount: Decimal
    status: str
    message: str


class PaymentStore(Protocol):
    def add(self, attempt: PaymentAttempt) -> PaymentAttempt:
        raise NotImplementedError()

    def get(self, attempt_id: uuid.UUID) -> Optional[PaymentAttempt]:
        raise NotImplementedError()

    def find(self, order_id: uuid.UUID, gateway: str, transaction_ref: str) -> Optional[PaymentAttempt]:
        raise NotImplementedError()

    def latest_for_order(self, order_id: uuid.UUID) -> Optional[PaymentAttempt]:
        raise NotImplementedError()

    def finalize_if_pending(self, attempt_id: uuid.UUID, status: AttemptStatus, gateway_response: dict,
                            error_message: Optional[str] = None) -> bool:
        raise NotImplementedError()


class PaymentService:
    """Coordinates gateways, payment attempts and the order lifecycle.

    Args:
        orders: Order lifecycle service (loads orders, applies payment hooks).
        payments: Attempt store.
        gateways: Registry of gateways keyed by payment-method tag.
        atomic: Factory returning a context manager for a unit of work.
        amount_tolerance: Largest accepted difference between the amount a
            client asks to pay and the order total.
    """

    def __init__(
        self,
        orders: OrderService,
        payments: PaymentStore,
        gateways: Mapping[str, PaymentGateway],
        atomic: Callable[[], ContextManager] = nullcontext,
        amount_tolerance: Decimal = Decimal("0.01"),
    ):
        self.orders = orders
        self.payments = payments
        self.gateways = gateways
        self.atomic = atomic
        self.amount_tolerance = amount_tolerance

    def _gateway(self, name: str) -> PaymentGateway:
        gateway = self.gateways.get(str(name).lower())
        if gateway is None:
            raise OrderValidationError("UNSUPPORTED_GATEWAY", f"Unsupported payment gateway: {name}")
        return gateway

    def initiate_payment(self, order_id, amount) -> PaymentSession:
        """Open a payment attempt for an order.

        Raises:
            OrderNotFound: ``ORDER_NOT_FOUND``.
            OrderValidationError: ``PAYMENT_METHOD_NOT_SUPPORTED`` (cash on
                delivery), ``INVALID_AMOUNT`` or ``AMOUNT_MISMATCH``.
            OrderConflict: ``PAYMENT_ALREADY_COMPLETED`` or
                ``INVALID_ORDER_STATE``.
            UpstreamUnavailable: ``GATEWAY_UNAVAILABLE``; nothing is stored.
        """
        requested = to_money(amount)
        order = self.orders.load(order_id)
        if order.payment_method is PaymentMethod.COD:
            raise OrderValidationError("PAYMENT_METHOD_NOT_SUPPORTED",
                                       "Cash on delivery orders are not paid online")
        gateway = self._gateway(order.payment_method.value)
        if order.payment_status is PaymentStatus.COMPLETED:
            raise OrderConflict("PAYMENT_ALREADY_COMPLETED", "Order is already paid")
        if order.status is OrderStatus.CANCELLED:
            raise OrderConflict("INVALID_ORDER_STATE", "Cancelled orders cannot be paid")
        if abs(requested - order.total_amount) > self.amount_tolerance:
            raise OrderValidationError("AMOUNT_MISMATCH", "Payment amount does not match order total")

        try:
            session = gateway.start_session(order, order.total_amount)
        except GatewayError as e:
            logger.warning("payment initiation failed", extra={"gateway": gateway.name,
                                                               "order_number": order.order_number,
                                                               "error": e.message})
            raise UpstreamUnavailable("GATEWAY_UNAVAILABLE", f"{gateway.name} is unavailable, try again later")

        self.payments.add(PaymentAttempt(
            id=None,
            order_id=order.id,
            gateway=gateway.name,
            transaction_ref=session.transaction_ref,
            amount=order.total_amount,
            gateway_response=session.raw,
        ))
        logger.info("payment initiated", extra={"gateway": gateway.name, "order_number": order.order_number,
                                                "transaction_ref": session.transaction_ref})
        return PaymentSession(payment_url=session.payment_url, transaction_ref=session.transaction_ref,
                              gateway=gateway.name)

    def verify_payment(self, order_id, gateway: str, transaction_ref: str,
                       provider_ref: Optional[str] = None) -> VerificationResult:
        """Reconcile one attempt with its provider.

        Provider failures, including timeouts and open circuits, are recorded
        on the attempt and reported as an unverified result rather than
        raised.

        Raises:
            OrderNotFound: ``ORDER_NOT_FOUND`` or ``PAYMENT_NOT_FOUND``.
            OrderValidationError: ``UNSUPPORTED_GATEWAY``.
        """
        order = self.orders.load(order_id)
        gw = self._gateway(gateway)
        attempt = self.payments.find(order.id, gw.name, transaction_ref)
        if attempt is None:
            raise OrderNotFound("PAYMENT_NOT_FOUND", "Payment record not found")
        if attempt.status is not AttemptStatus.PENDING:
            return self._result(attempt)

        try:
            outcome = gw.lookup(attempt, provider_ref)
        except GatewayError as e:
            logger.warning("payment verification failed", extra={"gateway": gw.name,
                                                                  "transaction_ref": transaction_ref,
                                                                  "error": e.message})
            outcome = GatewayOutcome(False, "error", {"error": e.message}, e.message)

        status = AttemptStatus.COMPLETED if outcome.success else AttemptStatus.FAILED
        with self.atomic():
            won = self.payments.finalize_if_pending(attempt.id, status, outcome.raw,
                                                    None if outcome.success else outcome.reason)
            if won and outcome.success:
                self.orders.confirm_payment(order.id, attempt.transaction_ref)
            elif won and self._is_latest(order.id, attempt):
                self.orders.fail_payment(order.id)
            elif won:
                logger.info("stale payment attempt failed, order left unchanged",
                            extra={"gateway": gw.name, "transaction_ref": transaction_ref})

        if not won:
            logger.info("duplicate payment confirmation ignored", extra={"transaction_ref": transaction_ref})
        else:
            logger.info("payment reconciled", extra={"gateway": gw.name, "transaction_ref": transaction_ref,
                                                     "status": status.value})
        return self._result(self.payments.get(attempt.id))

    def handle_callback(self, gateway: str, params: Mapping[str, str]) -> VerificationResult:
        """Verify the attempt named by a provider's return-redirect parameters."""
        gw = self._gateway(gateway)
        cb = gw.parse_callback(params)
        return self.verify_payment(cb.order_id, gw.name, cb.transaction_ref, cb.provider_ref)

    def latest_payment(self, order_id) -> PaymentAttempt:
        order = self.orders.load(order_id)
        attempt = self.payments.latest_for_order(order.id)
        if attempt is None:
            raise OrderNotFound("PAYMENT_NOT_FOUND", "No payment found for this order")
        return attempt

    def _is_latest(self, order_id, attempt: PaymentAttempt) -> bool:
        latest = self.payments.latest_for_order(order_id)
        return latest is None or latest.id == attempt.id

    @staticmethod
    def _result(attempt: PaymentAttempt) -> VerificationResult:
        verified = attempt.status is AttemptStatus.COMPLETED
        if verified:
            message = "Payment verified successfully"
        else:
            message = attempt.error_message or f"Payment {attempt.status.value}"
        return VerificationResult(
            verified=verified,
            transaction_ref=attempt.transaction_ref,
            amount=attempt.amount,
            status=attempt.status.value,
            message=message,
        )
