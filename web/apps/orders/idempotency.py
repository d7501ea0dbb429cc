"""Replay protection for order creation.

A client may send an ``Idempotency-Key`` header with ``POST /api/orders/``.
The first request with a key claims it; the response it produces is stored
against the key and replayed verbatim for later requests carrying the same
key and body. Keys are namespaced by buyer, so two buyers choosing the same
key never see each other's orders.

A claim whose request failed transiently is released so the client can
retry with the same key.
"""

import hashlib
import json
from dataclasses import dataclass

from django.db import IntegrityError, transaction

from .domain import OrderConflict
from .models import IdempotencyKey


class IdempotencyConflict(OrderConflict):
    def __init__(self):
        super().__init__("IDEMPOTENCY_CONFLICT", "Idempotency key reused with a different payload")


@dataclass
class Claim:
    """Outcome of claiming a key.

    Attributes:
        record: The stored key row.
        fresh: True when this request created the row and must run the
            operation; False when an earlier request owns it.
    """

    record: IdempotencyKey
    fresh: bool

    @property
    def in_progress(self) -> bool:
        return not self.fresh and not self.record.response_status


def fingerprint(payload: dict) -> str:
    """SHA-256 of ``payload`` serialized canonically (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def claim(scope: str, key: str, payload: dict) -> Claim:
    """Claim ``key`` within ``scope`` for a request carrying ``payload``.

    The insert runs in its own savepoint; losing the unique-key race falls
    through to a locked read of the winner's row.

    Raises:
        IdempotencyConflict: The key was already used with another payload.
    """
    scoped = f"{scope}:{key}"
    digest = fingerprint(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=scoped, request_hash=digest, response_status=0,
                                                response_body={})
        return Claim(rec, fresh=True)
    except IntegrityError:
        pass

    rec = IdempotencyKey.objects.select_for_update().get(key=scoped)
    if rec.request_hash != digest:
        raise IdempotencyConflict()
    return Claim(rec, fresh=False)


def store_response(rec: IdempotencyKey, status_code: int, body: dict, order_id=None) -> None:
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def release(rec: IdempotencyKey) -> None:
    """Drop a claim that never stored a response."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=0).delete()
