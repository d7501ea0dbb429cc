"""Catalog service API built with FastAPI.

This module exposes the product catalog and its inventory ledger to the
order gateway: product lookups, an admin upsert used for seeding, and the
reservation endpoints the order lifecycle relies on. Validation is
performed with Pydantic models, while persistence and reservation logic is
delegated to the SQLAlchemy-backed repository in ``repo.CatalogRepo``.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import CatalogRepo, engine, init_db

ProductId = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

logger = logging.getLogger("catalog")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


def _wait_for_db(timeout_s: float = 30.0):
    # short active wait until the database accepts connections
    deadline = time.time() + timeout_s
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _wait_for_db()
    init_db()
    yield


app = FastAPI(title="Catalog Service", lifespan=lifespan)


class ProductIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    inventory: int = Field(ge=0)
    seller_id: str = Field(min_length=1, max_length=64)
    is_active: bool = True
    verification_status: str = Field(default="pending", pattern=r"^(pending|approved|rejected)$")


class ProductOut(ProductIn):
    product_id: str
    purchase_count: int


class Item(BaseModel):
    """A line to be reserved from inventory.

    Attributes:
        product_id: Catalog identifier.
        quantity: Positive integer quantity to reserve.
    """

    product_id: ProductId
    quantity: int = Field(gt=0)


class ReserveRequest(BaseModel):
    """Request body for the reserve endpoint.

    Attributes:
        reservation_id: Client-generated id making the call idempotent.
        items: Lines to reserve; repeated products are summed.
    """

    reservation_id: uuid.UUID
    items: List[Item] = Field(min_length=1)


class ReserveResponse(BaseModel):
    reserved: bool
    detail: str | None = None


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: ProductId):
    product = CatalogRepo().get(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="PRODUCT_NOT_FOUND")
    return product


@app.put("/products/{product_id}", response_model=ProductOut)
def put_product(product_id: ProductId, body: ProductIn):
    return CatalogRepo().upsert(product_id, **body.model_dump())


@app.post("/reservations", response_model=ReserveResponse)
def reserve(req: ReserveRequest, request: Request):
    """Reserve stock for every line, all-or-nothing.

    Raises:
        HTTPException: With status 409 when any product lacks stock.
    """
    items = [(it.product_id, it.quantity) for it in req.items]
    ok = CatalogRepo().reserve(str(req.reservation_id), items)
    if not ok:
        logger.info("reservation refused", extra={"request_id": request.state.request_id,
                                                  "reservation_id": str(req.reservation_id)})
        raise HTTPException(status_code=409, detail="INSUFFICIENT_INVENTORY")
    return ReserveResponse(reserved=True)


@app.post("/reservations/{reservation_id}/release")
def release(reservation_id: uuid.UUID):
    released = CatalogRepo().release(str(reservation_id))
    if released is None:
        raise HTTPException(status_code=404, detail="RESERVATION_NOT_FOUND")
    return {"released": True, "already_released": not released}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
