"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the orders ports using
``httpx`` and the shared resilience helpers the payment gateways reuse:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream dependency (catalog, notifications, each
    payment gateway) to avoid hammering unhealthy services, with HALF_OPEN
    probing after a timeout.
- Retry policy with exponential backoff for transport errors and 5xx.
- Catalog reservations carry a client-generated reservation id, so retrying
    a reserve or release after a lost response cannot apply it twice.
"""

import logging
import os
import sys
import threading
import time
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import CatalogPort, NotificationEvent, Order, OrderLine, Product
from .notifications import Recipient
from .schemas import OrderReadDTO

logger = logging.getLogger(__name__)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


def _is_test_mode() -> bool:
    return (
        "pytest" in sys.modules
        or os.environ.get("PYTEST_CURRENT_TEST") is not None
        or os.environ.get("PYTEST_RUNNING") == "1"
    )


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe re-opens the circuit.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            RuntimeError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError(f"CIRCUIT_OPEN:{self.name}")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise RuntimeError(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                if self._state != "OPEN":
                    logger.warning("circuit opened", extra={"dependency": self.name})
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def breaker(name: str) -> CircuitBreaker:
    """Return the process-wide breaker for a downstream dependency."""
    with _breakers_lock:
        if name not in _breakers:
            _breakers[name] = CircuitBreaker(
                name,
                getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
                getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
            )
        return _breakers[name]


def breaker_states() -> Dict[str, str]:
    with _breakers_lock:
        items = list(_breakers.items())
    return {name: cb.state for name, cb in items}


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 2),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def request_with_retry(
    cb: CircuitBreaker,
    method: str,
    url: str,
    *,
    timeout: float,
    accept=(200,),
    retries: Optional[int] = None,
    headers: Optional[dict] = None,
    **kwargs,
) -> httpx.Response:
    """Send one logical request guarded by ``cb``.

    Responses whose status code is in ``accept`` are returned as-is and
    count as a healthy dependency. Transport errors and 5xx are retried
    with exponential backoff up to ``retries`` extra attempts (default
    ``HTTP_RETRY_MAX``); any other status raises immediately.

    Args:
        cb: Breaker of the dependency being called.
        method: ``httpx.Client`` method name (``"get"``, ``"post"``, ...).
        url: Absolute URL.
        timeout: Per-attempt timeout in seconds.
        accept: Status codes treated as business outcomes.
        retries: Override of the retry budget; 0 disables retries.
        headers: Extra headers merged over the correlation headers.

    Returns:
        httpx.Response: The first accepted response.

    Raises:
        httpx.RequestError: For network/transport errors after retries.
        httpx.HTTPStatusError: For non-accepted responses.
        RuntimeError: When the circuit is open.
    """
    max_retries, backoff = _retry_policy()
    if retries is not None:
        max_retries = retries
    if _is_test_mode():
        backoff = 0.0
    tries = 0

    state = cb.before_call()
    hdrs = _request_headers({**(headers or {}), "X-Circuit-State": state, "X-Retry-Count": "0"})

    try:
        with httpx.Client(timeout=timeout) as client:
            send = getattr(client, method)
            while True:
                resp = None
                exc = None
                try:
                    resp = send(url, headers=hdrs, **kwargs)
                    if resp.status_code in accept:
                        cb.on_success()
                        return resp
                    if not _should_retry(resp, None):
                        cb.on_success()  # business rejection, dependency is healthy
                        resp.raise_for_status()
                        return resp
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                hdrs["X-Retry-Count"] = str(tries)

                if tries > max_retries:
                    cb.on_failure()
                    logger.warning("downstream call failed", extra={"dependency": cb.name, "url": url,
                                                                    "tries": tries})
                    if exc is not None:
                        raise exc
                    resp.raise_for_status()
                    return resp

                sleep_s = backoff * (2 ** (tries - 1))
                cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                if sleep_s:
                    time.sleep(min(sleep_s, cap))
    finally:
        cb.on_finish()


# ---------------- Catalog Adapter ---------------- #

def _product_from_json(data: dict) -> Product:
    return Product(
        product_id=str(data["product_id"]),
        title=data["title"],
        price=Decimal(str(data["price"])),
        inventory=int(data["inventory"]),
        seller_id=str(data["seller_id"]),
        is_active=bool(data.get("is_active", True)),
        verification_status=data.get("verification_status", "pending"),
    )


class HttpCatalogClient(CatalogPort):
    """HTTP client for the catalog service with retry and circuit breaker."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.CATALOG_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.cb = breaker("catalog")

    def get_product(self, product_id: str) -> Optional[Product]:
        """Fetch the live product; 404 maps to None."""
        resp = request_with_retry(self.cb, "get", f"{self.base_url}/products/{product_id}",
                                  timeout=self.timeout, accept=(200, 404))
        if resp.status_code == 404:
            return None
        return _product_from_json(resp.json())

    def reserve(self, reservation_id: uuid.UUID, lines: List[OrderLine]) -> bool:
        """Reserve stock for every line, all-or-nothing.

        Maps business responses:
        - 200 → True
        - 409 → False (insufficient inventory), not a circuit failure
        """
        payload = {
            "reservation_id": str(reservation_id),
            "items": [{"product_id": line.product_id, "quantity": line.quantity} for line in lines],
        }
        resp = request_with_retry(self.cb, "post", f"{self.base_url}/reservations",
                                  timeout=self.timeout, accept=(200, 409), json=payload)
        return resp.status_code == 200 and bool(resp.json().get("reserved", False))

    def release(self, reservation_id: uuid.UUID) -> None:
        """Restore the stock of a reservation; unknown reservations are ignored."""
        resp = request_with_retry(self.cb, "post", f"{self.base_url}/reservations/{reservation_id}/release",
                                  timeout=self.timeout, accept=(200, 404))
        if resp.status_code == 404:
            logger.warning("release of unknown reservation", extra={"reservation_id": str(reservation_id)})


# ---------------- Notifications Adapter ---------------- #

class HttpNotificationClient:
    """Posts order events to the notification service.

    Delivery is at most one try: no retries, a short timeout, and any
    failure propagates to ``NotificationDispatcher`` which logs and drops it.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.NOTIFICATIONS_BASE_URL).rstrip("/")
        self.timeout = timeout or getattr(settings, "NOTIFICATIONS_TIMEOUT_SECS", 3.0)
        self.cb = breaker("notifications")

    def send(self, event: NotificationEvent, recipient: Recipient, order: Order) -> None:
        payload = {
            "event": event.value,
            "recipient": {"role": recipient.role, "id": recipient.id},
            "order": OrderReadDTO.from_domain(order).model_dump(mode="json", by_alias=True),
        }
        request_with_retry(self.cb, "post", f"{self.base_url}/events", timeout=self.timeout,
                           accept=(200, 201, 202, 204), retries=0, json=payload)
