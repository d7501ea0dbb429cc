import pytest
from django.core.cache import cache

from apps.orders import providers as order_providers
from apps.orders.http_adapters import _breakers
from apps.orders.tests.helpers import ADDRESS
from apps.payments import providers as payment_providers


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.NOTIFICATIONS_ASYNC = False
    order_providers.reset_stubs()
    payment_providers.reset_stubs()
    _breakers.clear()
    # throttle counters live in the cache
    cache.clear()
    yield


@pytest.fixture
def catalog():
    return order_providers.catalog_stub


@pytest.fixture
def sink():
    return order_providers.notification_stub


@pytest.fixture
def esewa():
    return payment_providers.esewa_stub


@pytest.fixture
def khalti():
    return payment_providers.khalti_stub


@pytest.fixture
def create_order(client):
    """Post an order through the API and return the response."""

    def _create(items, buyer="buyer-1", method="esewa", shipping="100", **extra):
        payload = {
            "buyerId": buyer,
            "cartItems": [{"productId": pid, "quantity": q} for pid, q in items],
            "shippingAddress": ADDRESS,
            "paymentMethod": method,
            "shippingCost": shipping,
        }
        return client.post("/api/orders/", data=payload, content_type="application/json", **extra)

    return _create
