"""HTTP views for the payments app.

Initiation opens an attempt and returns the provider redirect URL. The
callback endpoint accepts the provider's return-redirect parameters as
query string (GET) or body (POST) and answers with the reconciliation
result; an unverified payment is still a 200 with ``verified: false``.
"""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.orders.domain import OrderError
from apps.orders.views import error_response, upstream_response, validation_response

from . import providers
from .schemas import InitiatePaymentDTO, PaymentAttemptOut, PaymentSessionOut, VerificationOut

logger = logging.getLogger(__name__)


def _dump(dto) -> dict:
    return dto.model_dump(mode="json", by_alias=True)


class PaymentInitiateView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_initiate"

    def post(self, request):
        """Open a payment attempt.

        Returns:
            Response: 200 with {paymentUrl, providerTransactionRef, gateway};
            400/404/409 for domain errors; 503 with ``GATEWAY_UNAVAILABLE``
            when the provider cannot be reached.
        """
        try:
            dto = InitiatePaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_response(e)

        service = providers.get_payment_service()
        try:
            session = service.initiate_payment(dto.order_id, dto.amount)
        except OrderError as e:
            return error_response(e)
        except Exception:
            logger.exception("payment initiation failed", extra={"order_id": dto.order_id})
            return upstream_response()
        return Response(_dump(PaymentSessionOut.from_domain(session)), status=status.HTTP_200_OK)


class PaymentCallbackView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_callback"

    def _handle(self, gateway: str, params: dict):
        service = providers.get_payment_service()
        try:
            result = service.handle_callback(gateway, params)
        except OrderError as e:
            return error_response(e)
        except Exception:
            logger.exception("payment callback failed", extra={"gateway": gateway})
            return upstream_response()
        return Response(_dump(VerificationOut.from_domain(result)), status=status.HTTP_200_OK)

    def get(self, request, gateway: str):
        return self._handle(gateway, request.query_params.dict())

    def post(self, request, gateway: str):
        params = request.query_params.dict()
        if hasattr(request.data, "items"):
            params.update({k: str(v) for k, v in request.data.items()})
        return self._handle(gateway, params)


class LatestPaymentView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_detail"

    def get(self, request, oid):
        try:
            attempt = providers.get_payment_service().latest_payment(oid)
        except OrderError as e:
            return error_response(e)
        return Response(_dump(PaymentAttemptOut.from_domain(attempt)), status=status.HTTP_200_OK)
