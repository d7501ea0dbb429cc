"""Payment gateway adapters for eSewa and Khalti.

Both providers implement the ``PaymentGateway`` protocol: open a payment
session the buyer is redirected to, look up the outcome of an attempt, and
parse the parameters the provider sends back on its return redirect.
Transport goes through ``request_with_retry`` with one circuit breaker per
provider. Any transport failure, exhausted retry, open circuit or non-2xx
answer surfaces as ``GatewayError`` so the reconciliation layer has a
single failure type to record.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping, Optional, Protocol
from urllib.parse import urlencode

import httpx
from django.conf import settings

from apps.orders.domain import Order, OrderValidationError
from apps.orders.http_adapters import breaker, request_with_retry

logger = logging.getLogger(__name__)

ESEWA_SUCCESS_MARKER = "<response_code>Success</response_code>"
KHALTI_COMPLETED = "Completed"


@dataclass(frozen=True)
class GatewaySession:
    transaction_ref: str
    payment_url: str
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayOutcome:
    """Provider answer to a lookup.

    Attributes:
        success: True only when the provider reports the payment captured.
        status: Provider status string as received.
        raw: Opaque provider response stored on the attempt.
        reason: Failure explanation when ``success`` is False.
    """

    success: bool
    status: str
    raw: dict = field(default_factory=dict)
    reason: Optional[str] = None


@dataclass(frozen=True)
class CallbackParams:
    order_id: str
    transaction_ref: str
    provider_ref: Optional[str] = None


class GatewayError(Exception):
    """The provider could not be reached or answered outside its contract."""

    def __init__(self, gateway: str, message: str):
        super().__init__(f"{gateway}: {message}")
        self.gateway = gateway
        self.message = message


class PaymentGateway(Protocol):
    name: str

    def start_session(self, order: Order, amount: Decimal) -> GatewaySession:
        raise NotImplementedError()

    def lookup(self, attempt, provider_ref: Optional[str] = None) -> GatewayOutcome:
        raise NotImplementedError()

    def parse_callback(self, params: Mapping[str, str]) -> CallbackParams:
        raise NotImplementedError()


def _missing_params(gateway: str) -> OrderValidationError:
    return OrderValidationError("MISSING_CALLBACK_PARAMS", f"Missing required {gateway} callback parameters")


def _timeout() -> float:
    return getattr(settings, "PAYMENT_GATEWAY_TIMEOUT_SECS", 10.0)


class EsewaGateway:
    """eSewa ePay v1 adapter.

    The session id (``pid``) is generated locally; eSewa echoes it back as
    ``oid`` on the success redirect together with its own ``refId``.
    Verification is a GET whose XML body contains
    ``<response_code>Success</response_code>`` on success.
    """

    name = "esewa"

    def __init__(self, merchant_code: str | None = None, payment_url: str | None = None,
                 verify_url: str | None = None, frontend_url: str | None = None,
                 timeout: float | None = None):
        self.merchant_code = merchant_code or settings.ESEWA_MERCHANT_CODE
        self.payment_url = payment_url or settings.ESEWA_PAYMENT_URL
        self.verify_url = verify_url or settings.ESEWA_VERIFY_URL
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")
        self.timeout = timeout or _timeout()
        self.cb = breaker(self.name)

    def start_session(self, order: Order, amount: Decimal) -> GatewaySession:
        pid = str(uuid.uuid4())
        params = {
            "amt": str(amount),
            "psc": "0",
            "pdc": "0",
            "txAmt": "0",
            "tAmt": str(amount),
            "pid": pid,
            "scd": self.merchant_code,
            "su": f"{self.frontend_url}/payment/esewa/success?orderId={order.id}",
            "fu": f"{self.frontend_url}/payment/esewa/failure?orderId={order.id}",
        }
        return GatewaySession(
            transaction_ref=pid,
            payment_url=f"{self.payment_url}?{urlencode(params)}",
            raw={"pid": pid},
        )

    def lookup(self, attempt, provider_ref: Optional[str] = None) -> GatewayOutcome:
        params = {
            "amt": str(attempt.amount),
            "rid": provider_ref or attempt.transaction_ref,
            "pid": attempt.transaction_ref,
            "scd": self.merchant_code,
        }
        try:
            resp = request_with_retry(self.cb, "get", self.verify_url, timeout=self.timeout, params=params)
        except (httpx.HTTPError, RuntimeError) as e:
            raise GatewayError(self.name, str(e)) from e

        body = resp.text
        if ESEWA_SUCCESS_MARKER in body:
            return GatewayOutcome(True, "Success", {"response": body})
        return GatewayOutcome(False, "Failure", {"response": body}, "Payment verification failed")

    @staticmethod
    def parse_callback(params: Mapping[str, str]) -> CallbackParams:
        order_id = params.get("orderId")
        pid = params.get("oid")
        ref_id = params.get("refId")
        if not order_id or not pid or not ref_id:
            raise _missing_params("eSewa")
        return CallbackParams(order_id=order_id, transaction_ref=pid, provider_ref=ref_id)


class KhaltiGateway:
    """Khalti ePayment (KPG-2) adapter.

    Khalti assigns the session id (``pidx``) on initiation. Amounts are sent
    in paisa. Verification is a lookup by ``pidx`` whose ``status`` must be
    ``"Completed"``.
    """

    name = "khalti"

    def __init__(self, secret_key: str | None = None, payment_url: str | None = None,
                 verify_url: str | None = None, frontend_url: str | None = None,
                 timeout: float | None = None):
        self.secret_key = secret_key if secret_key is not None else settings.KHALTI_SECRET_KEY
        self.payment_url = payment_url or settings.KHALTI_PAYMENT_URL
        self.verify_url = verify_url or settings.KHALTI_VERIFY_URL
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")
        self.timeout = timeout or _timeout()
        self.cb = breaker(self.name)

    def _headers(self) -> dict:
        return {"Authorization": f"Key {self.secret_key}"}

    def start_session(self, order: Order, amount: Decimal) -> GatewaySession:
        payload = {
            "return_url": f"{self.frontend_url}/payment/khalti/callback",
            "website_url": self.frontend_url,
            "amount": int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP)),
            "purchase_order_id": str(order.id),
            "purchase_order_name": f"Order {order.order_number}",
        }
        try:
            # a retried initiation could open a second session
            resp = request_with_retry(self.cb, "post", self.payment_url, timeout=self.timeout, retries=0,
                                      headers=self._headers(), json=payload)
            data = resp.json()
        except (httpx.HTTPError, RuntimeError, ValueError) as e:
            raise GatewayError(self.name, str(e)) from e
        if not isinstance(data, dict):
            raise GatewayError(self.name, "initiation response is not a JSON object")

        pidx, url = data.get("pidx"), data.get("payment_url")
        if not pidx or not url:
            raise GatewayError(self.name, "initiation response without pidx/payment_url")
        return GatewaySession(transaction_ref=pidx, payment_url=url, raw=data)

    def lookup(self, attempt, provider_ref: Optional[str] = None) -> GatewayOutcome:
        try:
            resp = request_with_retry(self.cb, "post", self.verify_url, timeout=self.timeout,
                                      headers=self._headers(), json={"pidx": attempt.transaction_ref})
            data = resp.json()
        except (httpx.HTTPError, RuntimeError, ValueError) as e:
            raise GatewayError(self.name, str(e)) from e
        if not isinstance(data, dict):
            raise GatewayError(self.name, "lookup response is not a JSON object")

        status = str(data.get("status", ""))
        if status == KHALTI_COMPLETED:
            return GatewayOutcome(True, status, data)
        return GatewayOutcome(False, status, data, f"Payment not completed: {status or 'unknown'}")

    @staticmethod
    def parse_callback(params: Mapping[str, str]) -> CallbackParams:
        order_id = params.get("purchase_order_id")
        pidx = params.get("pidx")
        if not order_id or not pidx:
            raise _missing_params("Khalti")
        return CallbackParams(order_id=order_id, transaction_ref=pidx)
