"""Middleware that assigns request identifiers and resolves the acting user.

``RequestIdMiddleware`` ensures every incoming HTTP request receives a
request identifier (UUID). The identifier is read from the incoming
``X-Request-Id`` header when provided by the client, or generated
server-side otherwise. The middleware stores the id on the ``request``
object and in a context variable so code running downstream (HTTP clients,
log filters, notification workers) can access it without passing the value
explicitly.

``ActorMiddleware`` reads the identity forwarded by the upstream auth layer
in ``X-User-Id`` / ``X-User-Role`` and exposes it as ``request.actor``.
Authentication itself happens before this service.

Behavior contract:
- If the incoming request contains the ``X-Request-Id`` header, that value
  is reused as the request id.
- Otherwise a new UUIDv4 is generated.
- The response will include the same id in the ``X-Request-ID`` header.
"""

import contextvars
import os
import uuid
from dataclasses import dataclass

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
ACTOR_CTX = contextvars.ContextVar("actor_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))


@dataclass(frozen=True)
class Actor:
    id: str
    role: str


class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier.

    Attributes:
        HEADER (str): The name of the incoming HTTP header (in Django's
            ``request.META`` casing) that may contain a client-provided id.
        RESPONSE_HEADER (str): The name of the header returned on responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        """Populate the request with a request id and set a context var.

        Args:
            request: Django HttpRequest instance.
        """
        rid = request.META.get(self.HEADER)
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        """Ensure the response contains the request id header and return it.

        Args:
            request: Django HttpRequest (may be None in rare cases).
            response: Django HttpResponse to modify.

        Returns:
            The same HttpResponse instance with the ``X-Request-ID`` header set.
        """
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        return response


class ActorMiddleware(MiddlewareMixin):
    """Attach ``request.actor`` from the forwarded identity headers.

    ``request.actor`` is None when either header is missing; views that need
    an actor answer 401 ``UNAUTHENTICATED`` in that case. The role is
    lowercased but not validated here; the domain rejects unknown roles.
    """

    ID_HEADER = "HTTP_X_USER_ID"
    ROLE_HEADER = "HTTP_X_USER_ROLE"

    def process_request(self, request):
        actor_id = (request.META.get(self.ID_HEADER) or "").strip()
        role = (request.META.get(self.ROLE_HEADER) or "").strip().lower()
        request.actor = Actor(id=actor_id, role=role) if actor_id and role else None
        ACTOR_CTX.set(actor_id or "-")


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
