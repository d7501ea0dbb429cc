"""Unit tests for PaymentService reconciliation.

Orders are created through ``OrderService`` against the in-memory catalog;
gateways are ``GatewayStub`` instances so each test decides what the
provider answers.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import transaction
from django.utils import timezone

from apps.orders.adapters import InMemoryCatalog, RecordingNotificationSink
from apps.orders.domain import (
    CartItem,
    OrderConflict,
    OrderNotFound,
    OrderService,
    OrderStatus,
    OrderValidationError,
    PaymentStatus,
    ShippingAddress,
    UpstreamUnavailable,
)
from apps.orders.notifications import NotificationDispatcher
from apps.orders.repository import OrderRepository
from apps.payments.adapters import GatewayStub
from apps.payments.gateways import EsewaGateway, KhaltiGateway
from apps.payments.models import PaymentAttemptModel
from apps.payments.repository import PaymentRepository
from apps.payments.service import AttemptStatus, PaymentService

pytestmark = pytest.mark.django_db

ADDRESS = ShippingAddress(full_name="Maya Gurung", phone="9822222222", address_line1="Lakeside",
                          city="Pokhara", district="Kaski")


@pytest.fixture
def catalog():
    c = InMemoryCatalog()
    c.add_product("p1", "1000.00", 10, seller_id="seller-1")
    return c


@pytest.fixture
def orders(catalog):
    return OrderService(catalog=catalog, orders=OrderRepository(),
                        notifier=NotificationDispatcher(RecordingNotificationSink()), atomic=transaction.atomic)


@pytest.fixture
def esewa():
    return GatewayStub("esewa", EsewaGateway.parse_callback)


@pytest.fixture
def khalti():
    return GatewayStub("khalti", KhaltiGateway.parse_callback)


@pytest.fixture
def payments(orders, esewa, khalti):
    return PaymentService(orders=orders, payments=PaymentRepository(),
                          gateways={"esewa": esewa, "khalti": khalti}, atomic=transaction.atomic)


def _order(orders, method="esewa"):
    return orders.create_order("buyer-1", [CartItem("p1", 2)], ADDRESS, method, shipping_cost=100)


def _age(transaction_ref, minutes=5):
    PaymentAttemptModel.objects.filter(transaction_ref=transaction_ref).update(
        created_at=timezone.now() - timedelta(minutes=minutes))


def test_initiate_creates_pending_attempt(orders, payments, esewa):
    order = _order(orders)
    session = payments.initiate_payment(order.id, "2100.00")

    assert session.gateway == "esewa"
    assert session.transaction_ref == esewa.sessions[0].transaction_ref
    attempt = PaymentRepository().find(order.id, "esewa", session.transaction_ref)
    assert attempt.status is AttemptStatus.PENDING
    assert attempt.amount == Decimal("2100.00")


def test_initiate_accepts_amount_within_tolerance(orders, payments):
    order = _order(orders)
    assert payments.initiate_payment(order.id, Decimal("2099.99")).gateway == "esewa"


def test_initiate_amount_mismatch(orders, payments):
    order = _order(orders)
    with pytest.raises(OrderValidationError) as exc:
        payments.initiate_payment(order.id, 2000)
    assert str(exc.value) == "AMOUNT_MISMATCH"
    assert PaymentAttemptModel.objects.count() == 0


def test_initiate_rejects_cod_cancelled_and_paid(orders, payments):
    cod = _order(orders, "cod")
    with pytest.raises(OrderValidationError) as exc:
        payments.initiate_payment(cod.id, "2100.00")
    assert str(exc.value) == "PAYMENT_METHOD_NOT_SUPPORTED"

    cancelled = _order(orders)
    orders.update_order_status(cancelled.id, "cancelled", "buyer-1", "buyer")
    with pytest.raises(OrderConflict) as exc:
        payments.initiate_payment(cancelled.id, "2100.00")
    assert str(exc.value) == "INVALID_ORDER_STATE"

    paid = _order(orders)
    session = payments.initiate_payment(paid.id, "2100.00")
    payments.verify_payment(paid.id, "esewa", session.transaction_ref)
    with pytest.raises(OrderConflict) as exc:
        payments.initiate_payment(paid.id, "2100.00")
    assert str(exc.value) == "PAYMENT_ALREADY_COMPLETED"


def test_initiate_unknown_order(payments):
    with pytest.raises(OrderNotFound) as exc:
        payments.initiate_payment(uuid.uuid4(), "10")
    assert str(exc.value) == "ORDER_NOT_FOUND"


def test_initiate_gateway_down_persists_nothing(orders, payments, esewa):
    esewa.unavailable = True
    order = _order(orders)
    with pytest.raises(UpstreamUnavailable) as exc:
        payments.initiate_payment(order.id, "2100.00")
    assert str(exc.value) == "GATEWAY_UNAVAILABLE"
    assert exc.value.status_code == 503
    assert PaymentAttemptModel.objects.count() == 0


def test_successful_verification_confirms_order(orders, payments):
    order = _order(orders)
    session = payments.initiate_payment(order.id, "2100.00")

    result = payments.verify_payment(order.id, "esewa", session.transaction_ref, provider_ref="0004VZ")
    assert result.verified is True
    assert result.status == "completed"
    assert result.amount == Decimal("2100.00")

    stored = OrderRepository().get(order.id)
    assert stored.status is OrderStatus.CONFIRMED
    assert stored.payment_status is PaymentStatus.COMPLETED
    assert stored.payment_transaction_id == session.transaction_ref
    assert stored.confirmed_at is not None


def test_failed_verification_keeps_order_pending(orders, payments, khalti):
    khalti.succeed = False
    order = _order(orders, "khalti")
    session = payments.initiate_payment(order.id, "2100.00")

    result = payments.verify_payment(order.id, "khalti", session.transaction_ref)
    assert result.verified is False
    assert result.status == "failed"
    assert "Failed" in result.message

    stored = OrderRepository().get(order.id)
    assert stored.status is OrderStatus.PENDING
    assert stored.payment_status is PaymentStatus.FAILED


def test_gateway_timeout_marks_attempt_failed(orders, payments, esewa):
    order = _order(orders)
    session = payments.initiate_payment(order.id, "2100.00")
    esewa.unavailable = True

    result = payments.verify_payment(order.id, "esewa", session.transaction_ref)
    assert result.verified is False
    attempt = PaymentRepository().find(order.id, "esewa", session.transaction_ref)
    assert attempt.status is AttemptStatus.FAILED
    assert "timed out" in attempt.error_message
    assert OrderRepository().get(order.id).status is OrderStatus.PENDING


def test_verify_twice_is_idempotent(orders, payments, esewa):
    order = _order(orders)
    session = payments.initiate_payment(order.id, "2100.00")

    first = payments.verify_payment(order.id, "esewa", session.transaction_ref)
    after_first = OrderRepository().get(order.id)
    second = payments.verify_payment(order.id, "esewa", session.transaction_ref)
    after_second = OrderRepository().get(order.id)

    assert first == second
    assert esewa.lookups == [session.transaction_ref]
    assert after_first.status == after_second.status == OrderStatus.CONFIRMED
    assert after_first.confirmed_at == after_second.confirmed_at


def test_lost_race_returns_winner_result(orders, esewa, khalti):
    class RacingPayments(PaymentRepository):
        def finalize_if_pending(self, attempt_id, status, gateway_response, error_message=None):
            # a concurrent callback completes the attempt first
            super().finalize_if_pending(attempt_id, AttemptStatus.COMPLETED, {"winner": True})
            return super().finalize_if_pending(attempt_id, status, gateway_response, error_message)

    esewa.succeed = False
    service = PaymentService(orders=orders, payments=RacingPayments(),
                             gateways={"esewa": esewa, "khalti": khalti}, atomic=transaction.atomic)
    order = _order(orders)
    session = service.initiate_payment(order.id, "2100.00")

    result = service.verify_payment(order.id, "esewa", session.transaction_ref)
    assert result.verified is True
    assert OrderRepository().get(order.id).payment_status is PaymentStatus.PENDING


def test_failure_never_downgrades_completed_payment(orders, payments):
    order = _order(orders)
    good = payments.initiate_payment(order.id, "2100.00")
    payments.verify_payment(order.id, "esewa", good.transaction_ref)

    orders.fail_payment(order.id)
    assert OrderRepository().get(order.id).payment_status is PaymentStatus.COMPLETED


def test_verify_unknown_attempt_and_gateway(orders, payments):
    order = _order(orders)
    with pytest.raises(OrderNotFound) as exc:
        payments.verify_payment(order.id, "esewa", "no-such-ref")
    assert str(exc.value) == "PAYMENT_NOT_FOUND"

    with pytest.raises(OrderValidationError) as exc:
        payments.verify_payment(order.id, "paypal", "ref")
    assert str(exc.value) == "UNSUPPORTED_GATEWAY"


def test_esewa_callback(orders, payments):
    order = _order(orders)
    session = payments.initiate_payment(order.id, "2100.00")

    result = payments.handle_callback("esewa", {"orderId": str(order.id), "oid": session.transaction_ref,
                                                "amt": "2100.00", "refId": "0007ABC"})
    assert result.verified is True


def test_khalti_callback(orders, payments):
    order = _order(orders, "khalti")
    session = payments.initiate_payment(order.id, "2100.00")

    result = payments.handle_callback("khalti", {"purchase_order_id": str(order.id),
                                                 "pidx": session.transaction_ref, "status": "Completed"})
    assert result.verified is True
    assert OrderRepository().get(order.id).status is OrderStatus.CONFIRMED


@pytest.mark.parametrize(
    "gateway, params",
    [
        ("esewa", {"oid": "x", "refId": "y"}),
        ("esewa", {"orderId": "x", "oid": "y"}),
        ("khalti", {"pidx": "x"}),
        ("khalti", {"purchase_order_id": "x"}),
    ],
)
def test_callback_missing_params(payments, gateway, params):
    with pytest.raises(OrderValidationError) as exc:
        payments.handle_callback(gateway, params)
    assert str(exc.value) == "MISSING_CALLBACK_PARAMS"


def test_callback_unknown_gateway(payments):
    with pytest.raises(OrderValidationError) as exc:
        payments.handle_callback("paypal", {})
    assert str(exc.value) == "UNSUPPORTED_GATEWAY"


def test_latest_payment(orders, payments):
    order = _order(orders)
    with pytest.raises(OrderNotFound) as exc:
        payments.latest_payment(order.id)
    assert str(exc.value) == "PAYMENT_NOT_FOUND"

    first = payments.initiate_payment(order.id, "2100.00")
    second = payments.initiate_payment(order.id, "2100.00")
    _age(first.transaction_ref)
    assert payments.latest_payment(order.id).transaction_ref == second.transaction_ref


def test_failure_of_superseded_attempt_leaves_order_alone(orders, payments, esewa):
    order = _order(orders)
    old = payments.initiate_payment(order.id, "2100.00")
    new = payments.initiate_payment(order.id, "2100.00")
    _age(old.transaction_ref)
    esewa.succeed = False

    result = payments.verify_payment(order.id, "esewa", old.transaction_ref)

    assert result.verified is False
    assert PaymentRepository().find(order.id, "esewa", old.transaction_ref).status is AttemptStatus.FAILED
    assert PaymentRepository().find(order.id, "esewa", new.transaction_ref).status is AttemptStatus.PENDING
    reloaded = OrderRepository().get(order.id)
    assert reloaded.status is OrderStatus.PENDING
    assert reloaded.payment_status is PaymentStatus.PENDING


def test_failure_of_latest_attempt_marks_payment_failed(orders, payments, esewa):
    order = _order(orders)
    old = payments.initiate_payment(order.id, "2100.00")
    new = payments.initiate_payment(order.id, "2100.00")
    _age(old.transaction_ref)
    esewa.succeed = False

    payments.verify_payment(order.id, "esewa", new.transaction_ref)
    assert OrderRepository().get(order.id).payment_status is PaymentStatus.FAILED


def test_success_of_superseded_attempt_still_confirms(orders, payments):
    order = _order(orders)
    old = payments.initiate_payment(order.id, "2100.00")
    payments.initiate_payment(order.id, "2100.00")
    _age(old.transaction_ref)

    result = payments.verify_payment(order.id, "esewa", old.transaction_ref)

    assert result.verified is True
    reloaded = OrderRepository().get(order.id)
    assert reloaded.status is OrderStatus.CONFIRMED
    assert reloaded.payment_transaction_id == old.transaction_ref
