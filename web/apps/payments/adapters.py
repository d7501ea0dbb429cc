"""In-process gateway stubs.

``GatewayStub`` implements ``PaymentGateway`` without network calls for
tests and local development. Callback parsing is delegated to the real
adapter's parser so redirect parameters are handled exactly as in
production.
"""

import uuid
from decimal import Decimal
from typing import Callable, List, Mapping, Optional

from apps.orders.domain import Order

from .gateways import CallbackParams, GatewayError, GatewayOutcome, GatewaySession


class GatewayStub:
    """Configurable fake gateway.

    Attributes:
        succeed: Whether lookups report the payment captured.
        unavailable: Makes ``start_session`` and ``lookup`` raise
            ``GatewayError`` as if the provider timed out.
        lookups: References looked up so far, in order.
    """

    def __init__(self, name: str, parser: Callable[[Mapping[str, str]], CallbackParams]):
        self.name = name
        self._parser = parser
        self.reset()

    def reset(self) -> None:
        self.succeed = True
        self.unavailable = False
        self.sessions: List[GatewaySession] = []
        self.lookups: List[str] = []

    def start_session(self, order: Order, amount: Decimal) -> GatewaySession:
        if self.unavailable:
            raise GatewayError(self.name, "timed out")
        ref = f"{self.name}-{uuid.uuid4().hex}"
        session = GatewaySession(
            transaction_ref=ref,
            payment_url=f"https://{self.name}.invalid/pay/{ref}?amount={amount}",
            raw={"stub": True, "amount": str(amount)},
        )
        self.sessions.append(session)
        return session

    def lookup(self, attempt, provider_ref: Optional[str] = None) -> GatewayOutcome:
        self.lookups.append(attempt.transaction_ref)
        if self.unavailable:
            raise GatewayError(self.name, "timed out")
        if self.succeed:
            return GatewayOutcome(True, "Completed", {"status": "Completed", "provider_ref": provider_ref})
        return GatewayOutcome(False, "Failed", {"status": "Failed"}, "Payment not completed: Failed")

    def parse_callback(self, params: Mapping[str, str]) -> CallbackParams:
        return self._parser(params)
