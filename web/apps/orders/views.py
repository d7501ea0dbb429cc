"""HTTP views for the orders app.

This module contains DRF API views used by the orders service. Views are
kept intentionally small: they validate requests (via Pydantic), map to
domain DTOs, delegate to the domain service, and return an HTTP response.

The views obtain a configured ``OrderService`` from
``providers.get_order_service()`` which returns HTTP adapter-backed ports
(``HttpCatalogClient``, ``HttpNotificationClient``) or in-process stubs
depending on runtime settings. This allows tests and local development to
swap implementations without changing view logic.

Idempotency: when an ``Idempotency-Key`` header is provided, the create
endpoint ensures idempotent processing. The first request creates a record
and, upon completion, stores the response. Subsequent retries with the same
payload replay the stored status and body. If the same key is reused with a
different payload, the endpoint returns HTTP 409 (conflict). Keys are scoped
to the buyer so different buyers never share a record.
"""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import idempotency, providers
from .domain import OrderError, OrderForbidden
from .schemas import CreateOrderDTO, OrderReadDTO, UpdateStatusDTO

logger = logging.getLogger(__name__)


def error_response(err: OrderError) -> Response:
    return Response({"detail": err.code, "message": err.message}, status=err.status_code)


def validation_response(exc: ValidationError) -> Response:
    return Response(
        {
            "detail": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "errors": exc.errors(include_url=False, include_context=False, include_input=False),
        },
        status=status.HTTP_400_BAD_REQUEST,
    )


def upstream_response() -> Response:
    return Response(
        {"detail": "UPSTREAM_UNAVAILABLE", "message": "A downstream service is unavailable"},
        status=status.HTTP_503_SERVICE_UNAVAILABLE,
    )


def unauthenticated_response() -> Response:
    return Response(
        {"detail": "UNAUTHENTICATED", "message": "X-User-Id and X-User-Role headers are required"},
        status=status.HTTP_401_UNAUTHORIZED,
    )


def order_body(order) -> dict:
    return OrderReadDTO.from_domain(order).model_dump(mode="json", by_alias=True)


def _int_param(request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw in (None, ""):
        return default
    return int(raw)


class OrdersCollectionView(APIView):
    """List the actor's orders or create a new one.

    ``POST`` validates the payload using a Pydantic DTO, then calls the
    domain service which checks the cart against the catalog, reserves stock
    and persists a ``pending`` order. It supports idempotency via the
    ``Idempotency-Key`` header.
    """

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        actor = request.actor
        if actor is None:
            return unauthenticated_response()
        try:
            page = _int_param(request, "page", 1)
            page_size = _int_param(request, "page_size", 10)
        except ValueError:
            return Response({"detail": "INVALID_PAGINATION", "message": "page and page_size must be integers"},
                            status=status.HTTP_400_BAD_REQUEST)

        service = providers.get_order_service()
        try:
            orders, count = service.list_orders(actor.id, actor.role, page=page, page_size=page_size)
        except OrderError as e:
            return error_response(e)

        return Response(
            {
                "count": count,
                "page": max(1, page),
                "pageSize": min(max(1, page_size), 100),
                "results": [order_body(o) for o in orders],
            },
            status=status.HTTP_200_OK,
        )

    def post(self, request):
        """Create a new order.

        Args:
            request (Request): DRF request with JSON body and optional
                ``Idempotency-Key`` header.

        Returns:
            Response: One of the following responses.
            - 201 with the order resource when the order is created.
            - The stored status and body when the same idempotency key and
              payload are retried (``Idempotent-Replay: true``).
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when the same key is
              reused with a different payload.
            - 400 for DTO or domain validation errors.
            - 404 with {detail: "PRODUCT_NOT_FOUND"} for unknown products.
            - 422 with {detail: "INSUFFICIENT_INVENTORY"} when stock cannot
              be reserved.
            - 503 with {detail: "UPSTREAM_UNAVAILABLE"} when the catalog is
              unavailable.
        """
        idem_key = request.headers.get("Idempotency-Key")

        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_response(e)

        actor = request.actor
        if actor is not None and actor.role == "buyer" and actor.id != dto.buyer_id:
            return error_response(OrderForbidden("UNAUTHORIZED", "Buyers can only order for themselves"))

        rec = None
        if idem_key:
            try:
                claim = idempotency.claim(dto.buyer_id, idem_key, request.data)
            except OrderError as e:
                return error_response(e)
            rec = claim.record
            if claim.in_progress:
                return Response({"detail": "IDEMPOTENCY_IN_PROGRESS",
                                 "message": "A request with this key is still being processed"},
                                status=status.HTTP_409_CONFLICT)
            if not claim.fresh:
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        service = providers.get_order_service()
        try:
            order = service.create_order(
                buyer_id=dto.buyer_id,
                cart_items=dto.cart(),
                shipping_address=dto.shipping_address.to_domain(),
                payment_method=dto.payment_method,
                shipping_cost=dto.shipping_cost,
            )
        except OrderError as e:
            resp = error_response(e)
            if rec:
                if e.status_code >= 500:
                    idempotency.release(rec)
                else:
                    idempotency.store_response(rec, resp.status_code, resp.data)
            return resp
        except Exception:
            logger.exception("order creation failed", extra={"buyer_id": dto.buyer_id})
            if rec:
                idempotency.release(rec)
            return upstream_response()

        body = order_body(order)
        if rec:
            idempotency.store_response(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class OrderDetailView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        actor = request.actor
        if actor is None:
            return unauthenticated_response()
        try:
            order = providers.get_order_service().get_order(oid, actor.id, actor.role)
        except OrderError as e:
            return error_response(e)
        return Response(order_body(order), status=status.HTTP_200_OK)


class OrderStatusView(APIView):
    """Apply a status transition on behalf of the acting user."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_status"

    def post(self, request, oid):
        actor = request.actor
        if actor is None:
            return unauthenticated_response()
        try:
            dto = UpdateStatusDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_response(e)

        service = providers.get_order_service()
        try:
            order = service.update_order_status(oid, dto.status, actor.id, actor.role,
                                                tracking_code=dto.tracking_code)
        except OrderError as e:
            return error_response(e)
        except Exception:
            logger.exception("status update failed", extra={"order_id": str(oid), "to_status": dto.status})
            return upstream_response()
        return Response(order_body(order), status=status.HTTP_200_OK)
