"""Pydantic schemas for the payments API (camelCase on the wire)."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from apps.orders.schemas import CamelModel

from .service import PaymentAttempt, PaymentSession, VerificationResult


class InitiatePaymentDTO(CamelModel):
    order_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(max_digits=12, decimal_places=2)


class PaymentSessionOut(CamelModel):
    payment_url: str
    provider_transaction_ref: str
    gateway: str

    @classmethod
    def from_domain(cls, session: PaymentSession) -> "PaymentSessionOut":
        return cls(payment_url=session.payment_url, provider_transaction_ref=session.transaction_ref,
                   gateway=session.gateway)


class VerificationOut(CamelModel):
    verified: bool
    transaction_ref: str
    amount: Decimal
    status: str
    message: str

    @classmethod
    def from_domain(cls, result: VerificationResult) -> "VerificationOut":
        return cls(verified=result.verified, transaction_ref=result.transaction_ref, amount=result.amount,
                   status=result.status, message=result.message)


class PaymentAttemptOut(CamelModel):
    id: uuid.UUID
    order_id: uuid.UUID
    gateway: str
    transaction_ref: str
    amount: Decimal
    status: str
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, attempt: PaymentAttempt) -> "PaymentAttemptOut":
        return cls(
            id=attempt.id,
            order_id=attempt.order_id,
            gateway=attempt.gateway,
            transaction_ref=attempt.transaction_ref,
            amount=attempt.amount,
            status=attempt.status.value,
            error_message=attempt.error_message,
            created_at=attempt.created_at,
            updated_at=attempt.updated_at,
        )
