import pytest

from apps.orders.models import IdempotencyKey, OrderModel

pytestmark = pytest.mark.django_db


@pytest.fixture(autouse=True)
def products(catalog):
    catalog.add_product("p1", "1000.00", 10, seller_id="seller-1")


def test_idempotent_same_payload_returns_same_order_and_status_on_retry(create_order, catalog):
    key = {"HTTP_IDEMPOTENCY_KEY": "idem-same-1"}

    r1 = create_order([("p1", 2)], **key)
    assert r1.status_code == 201
    body1 = r1.json()

    r2 = create_order([("p1", 2)], **key)
    assert r2.status_code == r1.status_code
    assert r2.json() == body1
    assert r2.headers.get("Idempotent-Replay") == "true"

    assert OrderModel.objects.count() == 1
    assert catalog.inventory("p1") == 8


def test_idempotent_conflict_on_different_payload_with_same_key(create_order):
    key = {"HTTP_IDEMPOTENCY_KEY": "idem-conflict-1"}

    r1 = create_order([("p1", 2)], **key)
    assert r1.status_code == 201

    r2 = create_order([("p1", 3)], **key)
    assert r2.status_code == 409
    assert r2.json()["detail"] == "IDEMPOTENCY_CONFLICT"


def test_idempotent_replay_preserves_422_status(create_order, catalog):
    key = {"HTTP_IDEMPOTENCY_KEY": "idem-422"}

    r1 = create_order([("p1", 999)], **key)
    assert r1.status_code == 422

    catalog.add_product("p1", "1000.00", 5000, seller_id="seller-1")
    r2 = create_order([("p1", 999)], **key)
    assert r2.status_code == 422
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"


def test_keys_are_scoped_per_buyer(create_order):
    key = {"HTTP_IDEMPOTENCY_KEY": "shared-key"}
    r1 = create_order([("p1", 1)], buyer="buyer-1", **key)
    r2 = create_order([("p1", 1)], buyer="buyer-2", **key)
    assert r1.status_code == r2.status_code == 201
    assert r1.json()["id"] != r2.json()["id"]
    assert IdempotencyKey.objects.count() == 2


def test_upstream_failure_does_not_pin_the_key(create_order, monkeypatch, catalog):
    from apps.orders import providers

    key = {"HTTP_IDEMPOTENCY_KEY": "idem-503"}
    original = providers.catalog_stub.reserve

    def down(*a, **k):
        raise ConnectionError("catalog down")

    monkeypatch.setattr(providers.catalog_stub, "reserve", down)
    assert create_order([("p1", 1)], **key).status_code == 503

    monkeypatch.setattr(providers.catalog_stub, "reserve", original)
    r = create_order([("p1", 1)], **key)
    assert r.status_code == 201
    assert r.headers.get("Idempotent-Replay") is None


def test_claim_reports_in_progress_until_a_response_is_stored():
    from apps.orders import idempotency

    first = idempotency.claim("buyer-1", "k1", {"a": 1, "b": [1, 2]})
    assert first.fresh is True

    second = idempotency.claim("buyer-1", "k1", {"b": [1, 2], "a": 1})
    assert second.fresh is False
    assert second.in_progress is True

    idempotency.store_response(first.record, 201, {"ok": True})
    third = idempotency.claim("buyer-1", "k1", {"a": 1, "b": [1, 2]})
    assert third.in_progress is False
    assert third.record.response_body == {"ok": True}

    with pytest.raises(idempotency.IdempotencyConflict):
        idempotency.claim("buyer-1", "k1", {"a": 2})
