"""Service provider helpers for wiring OrderService with ports.

This module exposes factory functions that return configured collaborators.
When ``settings.USE_HTTP_ADAPTERS`` is truthy the catalog and notification
ports are backed by the HTTP clients; otherwise process-wide in-memory stubs
are used, which keeps tests and local development deterministic. The stubs
live at module level so their state survives across requests, and
``reset_stubs`` puts them back to an empty state.
"""

from django.conf import settings
from django.db import transaction

from .adapters import InMemoryCatalog, RecordingNotificationSink
from .domain import CatalogPort, OrderService
from .http_adapters import HttpCatalogClient, HttpNotificationClient
from .notifications import NotificationDispatcher, shared_executor
from .repository import OrderRepository

catalog_stub = InMemoryCatalog()
notification_stub = RecordingNotificationSink()


def _use_http() -> bool:
    return bool(getattr(settings, "USE_HTTP_ADAPTERS", True))


def reset_stubs() -> None:
    catalog_stub.clear()
    notification_stub.clear()


def get_catalog() -> CatalogPort:
    if _use_http():
        return HttpCatalogClient()
    return catalog_stub


def get_notifier() -> NotificationDispatcher:
    """Return the dispatcher, asynchronous when ``NOTIFICATIONS_ASYNC`` is set."""
    sink = HttpNotificationClient() if _use_http() else notification_stub
    executor = None
    if getattr(settings, "NOTIFICATIONS_ASYNC", False):
        executor = shared_executor(getattr(settings, "NOTIFICATIONS_WORKERS", 2))
    return NotificationDispatcher(sink, executor=executor)


def get_order_service() -> OrderService:
    """Return a configured OrderService instance.

    Returns:
        OrderService: A service wired to the ORM repository, Django
        transactions and the configured catalog and notification ports.
    """
    return OrderService(
        catalog=get_catalog(),
        orders=OrderRepository(),
        notifier=get_notifier(),
        atomic=transaction.atomic,
        number_prefix=getattr(settings, "ORDER_NUMBER_PREFIX", "MN"),
    )
