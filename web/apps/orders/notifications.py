"""Best-effort notification dispatch.

Order creation and status transitions hand buyer/seller messages to a
``NotificationDispatcher``. The dispatcher forwards them to a sink (the
external notification collaborator) either inline or on a small thread
pool, and swallows every delivery failure after logging it. The
transactional result of the operation that produced the message is
therefore never affected by the sink.
"""

import contextvars
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Protocol

from .domain import NotificationEvent, Order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    role: str
    id: str


class NotificationSink(Protocol):
    """Port for the external notification service."""

    def send(self, event: NotificationEvent, recipient: Recipient, order: Order) -> None:
        raise NotImplementedError()


class NotificationDispatcher:
    """Fire-and-forget wrapper around a ``NotificationSink``.

    Args:
        sink: Destination of the messages.
        executor: Optional executor; when given, deliveries run off the
            request thread with the caller's context (request id) copied.
    """

    def __init__(self, sink: NotificationSink, executor: Optional[Executor] = None):
        self.sink = sink
        self.executor = executor

    def dispatch(self, event: NotificationEvent, role: str, recipient_id: str, order: Order) -> None:
        recipient = Recipient(role=role, id=str(recipient_id))
        if self.executor is None:
            self._deliver(event, recipient, order)
            return
        try:
            ctx = contextvars.copy_context()
            self.executor.submit(ctx.run, self._deliver, event, recipient, order)
        except RuntimeError:
            # executor shut down during worker recycling
            logger.warning("notification dropped, executor unavailable",
                           extra={"event": event.value, "order_number": order.order_number})

    def _deliver(self, event: NotificationEvent, recipient: Recipient, order: Order) -> None:
        try:
            self.sink.send(event, recipient, order)
        except Exception:
            logger.warning(
                "notification delivery failed",
                exc_info=True,
                extra={"event": event.value, "recipient_role": recipient.role,
                       "order_number": order.order_number},
            )


_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def shared_executor(max_workers: int = 2) -> ThreadPoolExecutor:
    """Return the process-wide notification thread pool, creating it lazily."""
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        return _executor
