"""Service provider helpers for wiring PaymentService.

Mirrors ``apps.orders.providers``: real gateway adapters when
``settings.USE_HTTP_ADAPTERS`` is truthy, process-wide stubs otherwise.
"""

from decimal import Decimal
from typing import Dict

from django.conf import settings
from django.db import transaction

from apps.orders import providers as order_providers

from .adapters import GatewayStub
from .gateways import EsewaGateway, KhaltiGateway, PaymentGateway
from .repository import PaymentRepository
from .service import PaymentService

esewa_stub = GatewayStub("esewa", EsewaGateway.parse_callback)
khalti_stub = GatewayStub("khalti", KhaltiGateway.parse_callback)


def reset_stubs() -> None:
    esewa_stub.reset()
    khalti_stub.reset()


def get_gateways() -> Dict[str, PaymentGateway]:
    """Return the gateway registry keyed by payment-method tag."""
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return {"esewa": EsewaGateway(), "khalti": KhaltiGateway()}
    return {"esewa": esewa_stub, "khalti": khalti_stub}


def get_payment_service() -> PaymentService:
    return PaymentService(
        orders=order_providers.get_order_service(),
        payments=PaymentRepository(),
        gateways=get_gateways(),
        atomic=transaction.atomic,
        amount_tolerance=getattr(settings, "PAYMENT_AMOUNT_TOLERANCE", Decimal("0.01")),
    )
