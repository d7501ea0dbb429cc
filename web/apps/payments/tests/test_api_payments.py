"""API tests for payment initiation, provider callbacks and lookups."""

import uuid

import pytest

from apps.orders.tests.helpers import actor
from apps.payments.models import PaymentAttemptModel

pytestmark = pytest.mark.django_db

INITIATE_URL = "/api/payments/initiate/"


@pytest.fixture(autouse=True)
def products(catalog):
    catalog.add_product("p1", "1000.00", 10, seller_id="seller-1")


@pytest.fixture
def order(create_order):
    r = create_order([("p1", 2)])
    assert r.status_code == 201
    return r.json()


def _initiate(client, order_id, amount):
    return client.post(INITIATE_URL, data={"orderId": order_id, "amount": amount},
                       content_type="application/json")


def test_initiate_returns_redirect(client, order, esewa):
    r = _initiate(client, order["id"], "2100.00")
    assert r.status_code == 200
    body = r.json()
    assert body["gateway"] == "esewa"
    assert body["providerTransactionRef"] == esewa.sessions[0].transaction_ref
    assert body["paymentUrl"].startswith("https://esewa.invalid/pay/")


@pytest.mark.parametrize(
    "payload, status_code, code",
    [
        ({"amount": "2100.00"}, 400, "VALIDATION_ERROR"),
        ({"orderId": "x", "amount": "abc"}, 400, "VALIDATION_ERROR"),
        ({"orderId": "not-a-uuid", "amount": "10"}, 400, "INVALID_ORDER_ID"),
        ({"orderId": str(uuid.uuid4()), "amount": "10"}, 404, "ORDER_NOT_FOUND"),
    ],
)
def test_initiate_bad_requests(client, payload, status_code, code):
    r = client.post(INITIATE_URL, data=payload, content_type="application/json")
    assert r.status_code == status_code
    assert r.json()["detail"] == code


def test_initiate_amount_mismatch(client, order):
    r = _initiate(client, order["id"], "100.00")
    assert r.status_code == 400
    assert r.json()["detail"] == "AMOUNT_MISMATCH"


def test_initiate_cod_is_rejected(client, create_order):
    order = create_order([("p1", 1)], method="cod").json()
    r = _initiate(client, order["id"], order["totalAmount"])
    assert r.status_code == 400
    assert r.json()["detail"] == "PAYMENT_METHOD_NOT_SUPPORTED"


def test_initiate_gateway_down_is_503(client, order, esewa):
    esewa.unavailable = True
    r = _initiate(client, order["id"], "2100.00")
    assert r.status_code == 503
    assert r.json()["detail"] == "GATEWAY_UNAVAILABLE"
    assert PaymentAttemptModel.objects.count() == 0


def test_esewa_callback_confirms_order(client, order):
    ref = _initiate(client, order["id"], "2100.00").json()["providerTransactionRef"]

    r = client.get(f"/api/payments/esewa/callback/?orderId={order['id']}&oid={ref}&amt=2100.00&refId=0008XYZ")
    assert r.status_code == 200
    assert r.json() == {"verified": True, "transactionRef": ref, "amount": "2100.00",
                        "status": "completed", "message": "Payment verified successfully"}

    detail = client.get(f"/api/orders/{order['id']}/", **actor("buyer-1", "buyer")).json()
    assert detail["status"] == "confirmed"
    assert detail["paymentStatus"] == "completed"
    assert detail["paymentTransactionId"] == ref


def test_khalti_callback_by_post(client, create_order, khalti):
    order = create_order([("p1", 1)], method="khalti").json()
    ref = _initiate(client, order["id"], order["totalAmount"]).json()["providerTransactionRef"]

    r = client.post("/api/payments/khalti/callback/",
                    data={"purchase_order_id": order["id"], "pidx": ref, "status": "Completed"},
                    content_type="application/json")
    assert r.status_code == 200
    assert r.json()["verified"] is True
    assert khalti.lookups == [ref]


def test_failed_callback_is_200_unverified(client, order, esewa):
    esewa.succeed = False
    ref = _initiate(client, order["id"], "2100.00").json()["providerTransactionRef"]

    r = client.get(f"/api/payments/esewa/callback/?orderId={order['id']}&oid={ref}&refId=R1")
    assert r.status_code == 200
    assert r.json()["verified"] is False
    assert r.json()["status"] == "failed"

    detail = client.get(f"/api/orders/{order['id']}/", **actor("buyer-1", "buyer")).json()
    assert detail["status"] == "pending"
    assert detail["paymentStatus"] == "failed"


def test_duplicate_callback_is_harmless(client, order, esewa):
    ref = _initiate(client, order["id"], "2100.00").json()["providerTransactionRef"]
    url = f"/api/payments/esewa/callback/?orderId={order['id']}&oid={ref}&refId=R1"

    first = client.get(url).json()
    second = client.get(url).json()
    assert first == second
    assert esewa.lookups == [ref]

    r = _initiate(client, order["id"], "2100.00")
    assert r.status_code == 409
    assert r.json()["detail"] == "PAYMENT_ALREADY_COMPLETED"


@pytest.mark.parametrize(
    "query, status_code, code",
    [
        ("oid=x&refId=y", 400, "MISSING_CALLBACK_PARAMS"),
        (f"orderId={uuid.uuid4()}&oid=x&refId=y", 404, "ORDER_NOT_FOUND"),
    ],
)
def test_callback_errors(client, query, status_code, code):
    r = client.get(f"/api/payments/esewa/callback/?{query}")
    assert r.status_code == status_code
    assert r.json()["detail"] == code


def test_callback_unknown_attempt(client, order):
    r = client.get(f"/api/payments/esewa/callback/?orderId={order['id']}&oid=nope&refId=y")
    assert r.status_code == 404
    assert r.json()["detail"] == "PAYMENT_NOT_FOUND"


def test_callback_unknown_gateway(client):
    r = client.get("/api/payments/paypal/callback/?token=x")
    assert r.status_code == 400
    assert r.json()["detail"] == "UNSUPPORTED_GATEWAY"


def test_latest_payment(client, order):
    url = f"/api/payments/orders/{order['id']}/"
    r = client.get(url)
    assert r.status_code == 404
    assert r.json()["detail"] == "PAYMENT_NOT_FOUND"

    ref = _initiate(client, order["id"], "2100.00").json()["providerTransactionRef"]
    r = client.get(url)
    assert r.status_code == 200
    body = r.json()
    assert body["orderId"] == order["id"]
    assert body["transactionRef"] == ref
    assert body["status"] == "pending"
    assert body["amount"] == "2100.00"
