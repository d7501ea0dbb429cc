"""Unit tests for HTTP adapters to the catalog and notification services.

These tests verify that the HTTP clients map business responses, build the
expected payloads and propagate correlation headers by monkeypatching
``httpx.Client.get``/``post`` and asserting the adapter behavior.
"""

import uuid
from decimal import Decimal

import httpx
import pytest

from apps.orders.domain import NotificationEvent, OrderLine
from apps.orders.http_adapters import HttpCatalogClient, HttpNotificationClient
from apps.orders.notifications import Recipient
from apps.orders.tests.helpers import DummyResp
from gateway.middleware import REQUEST_ID_CTX

PRODUCT = {
    "product_id": "p1",
    "title": "Lokta Notebook",
    "price": "450.00",
    "inventory": 7,
    "purchase_count": 3,
    "seller_id": "seller-1",
    "is_active": True,
    "verification_status": "approved",
}


def _line(pid="p1", qty=2):
    return OrderLine(product_id=pid, title=pid, unit_price=Decimal("1"), quantity=qty, seller_id="s")


def test_get_product_maps_json(monkeypatch):
    seen = {}

    def fake_get(self, url, headers=None, **kw):
        seen["url"] = url
        return DummyResp(200, PRODUCT)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    product = HttpCatalogClient(base_url="http://catalog").get_product("p1")
    assert seen["url"] == "http://catalog/products/p1"
    assert product.price == Decimal("450.00")
    assert product.inventory == 7
    assert product.verification_status == "approved"


def test_get_product_404_is_none(monkeypatch):
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, **kw: DummyResp(404), raising=True)
    assert HttpCatalogClient(base_url="http://catalog").get_product("nope") is None


def test_reserve_ok_sends_reservation_id(monkeypatch):
    seen = {}

    def fake_post(self, url, json=None, headers=None, **kw):
        seen.update(url=url, json=json, headers=headers)
        return DummyResp(200, {"reserved": True})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    rid = uuid.uuid4()
    token = REQUEST_ID_CTX.set("req-42")
    try:
        ok = HttpCatalogClient(base_url="http://catalog/").reserve(rid, [_line("p1", 2), _line("p2", 1)])
    finally:
        REQUEST_ID_CTX.reset(token)

    assert ok is True
    assert seen["url"] == "http://catalog/reservations"
    assert seen["json"] == {
        "reservation_id": str(rid),
        "items": [{"product_id": "p1", "quantity": 2}, {"product_id": "p2", "quantity": 1}],
    }
    assert seen["headers"]["X-Request-ID"] == "req-42"


def test_reserve_409_is_false(monkeypatch):
    def fake_post(self, url, json=None, headers=None, **kw):
        return DummyResp(409, {"detail": "INSUFFICIENT_INVENTORY"})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    assert HttpCatalogClient(base_url="http://catalog").reserve(uuid.uuid4(), [_line()]) is False


def test_reserve_network_error_raises(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 0

    def fake_post(self, url, json=None, headers=None, **kw):
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(httpx.ConnectError):
        HttpCatalogClient(base_url="http://catalog").reserve(uuid.uuid4(), [_line()])


def test_release_404_is_ignored(monkeypatch):
    seen = {}

    def fake_post(self, url, json=None, headers=None, **kw):
        seen["url"] = url
        return DummyResp(404)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    rid = uuid.uuid4()
    HttpCatalogClient(base_url="http://catalog").release(rid)
    assert seen["url"] == f"http://catalog/reservations/{rid}/release"


@pytest.mark.django_db
def test_notification_client_posts_event(monkeypatch, catalog):
    from apps.orders import providers
    from apps.orders.domain import CartItem
    from apps.orders.domain import ShippingAddress

    address = ShippingAddress(full_name="Hari", phone="9800000001", address_line1="Thamel",
                              city="Kathmandu", district="Kathmandu")

    catalog.add_product("p1", "1000.00", 5, seller_id="seller-1")
    order = providers.get_order_service().create_order("buyer-1", [CartItem("p1", 1)], address, "cod")
    seen = {}

    def fake_post(self, url, json=None, headers=None, **kw):
        seen.update(url=url, json=json)
        return DummyResp(202)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    HttpNotificationClient(base_url="http://notify").send(
        NotificationEvent.ORDER_CONFIRMATION, Recipient("buyer", "buyer-1"), order
    )
    assert seen["url"] == "http://notify/events"
    assert seen["json"]["event"] == "order_confirmation"
    assert seen["json"]["recipient"] == {"role": "buyer", "id": "buyer-1"}
    assert seen["json"]["order"]["orderNumber"] == order.order_number
    assert seen["json"]["order"]["totalAmount"] == "1000.00"
