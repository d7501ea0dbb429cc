"""Repository layer for payment attempts.

Maps ``PaymentAttempt`` dataclasses onto ``PaymentAttemptModel``. The only
mutation after creation is ``finalize_if_pending``, a compare-and-set on the
``pending`` status, which is what makes duplicate callbacks harmless.
"""

import uuid
from typing import Optional

from django.utils import timezone

from .models import PaymentAttemptModel
from .service import AttemptStatus, PaymentAttempt


def _to_domain(obj: PaymentAttemptModel) -> PaymentAttempt:
    return PaymentAttempt(
        id=obj.id,
        order_id=obj.order_id,
        gateway=obj.gateway,
        transaction_ref=obj.transaction_ref,
        amount=obj.amount,
        status=AttemptStatus(obj.status),
        gateway_response=obj.gateway_response or {},
        error_message=obj.error_message,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


class PaymentRepository:
    """Repository that persists PaymentAttempt domain objects using Django ORM."""

    def add(self, attempt: PaymentAttempt) -> PaymentAttempt:
        now = timezone.now()
        obj = PaymentAttemptModel.objects.create(
            order_id=attempt.order_id,
            gateway=attempt.gateway,
            transaction_ref=attempt.transaction_ref,
            amount=attempt.amount,
            status=attempt.status.value,
            gateway_response=attempt.gateway_response,
            error_message=attempt.error_message,
            created_at=now,
            updated_at=now,
        )
        return _to_domain(obj)

    def get(self, attempt_id: uuid.UUID) -> Optional[PaymentAttempt]:
        obj = PaymentAttemptModel.objects.filter(id=attempt_id).first()
        return _to_domain(obj) if obj else None

    def find(self, order_id: uuid.UUID, gateway: str, transaction_ref: str) -> Optional[PaymentAttempt]:
        obj = PaymentAttemptModel.objects.filter(
            order_id=order_id, gateway=gateway, transaction_ref=transaction_ref
        ).first()
        return _to_domain(obj) if obj else None

    def latest_for_order(self, order_id: uuid.UUID) -> Optional[PaymentAttempt]:
        obj = PaymentAttemptModel.objects.filter(order_id=order_id).order_by("-created_at").first()
        return _to_domain(obj) if obj else None

    def finalize_if_pending(self, attempt_id: uuid.UUID, status: AttemptStatus, gateway_response: dict,
                            error_message: Optional[str] = None) -> bool:
        """Move a pending attempt to its terminal status.

        Returns:
            bool: False when another writer already finalized the attempt.
        """
        updated = PaymentAttemptModel.objects.filter(
            id=attempt_id, status=AttemptStatus.PENDING.value
        ).update(
            status=status.value,
            gateway_response=gateway_response,
            error_message=error_message,
            updated_at=timezone.now(),
        )
        return updated == 1
