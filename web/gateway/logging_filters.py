"""Logging filters for enriching log records with request context.

This module provides a logging filter that injects the current request id
and acting user into log records using the ContextVars set by the gateway
middleware. Adding the filter to the logging configuration enables
per-request correlation in logs without modifying individual log statements.
"""

from logging import Filter, LogRecord

from .middleware import ACTOR_CTX, REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` and ``actor_id`` attributes to log records.

    The values are retrieved from the ContextVars set by
    ``RequestIdMiddleware`` and ``ActorMiddleware``. If no value is present,
    a hyphen ("-") is used as a placeholder so formatters can reliably
    reference ``%(request_id)s`` and ``%(actor_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        """Populate the context attributes and allow the record to be logged.

        Args:
            record: The log record to enrich.

        Returns:
            bool: Always True to indicate the record should be processed.
        """
        record.request_id = REQUEST_ID_CTX.get()
        record.actor_id = ACTOR_CTX.get()
        return True
