"""
Order Service: FastAPI entrypoint

Checkout (the saga orchestrator), order status management and order
queries. The payment service reports outcomes on the internal
payment-status route.
"""

import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.config import env_float
from services.common.errors import NotFound, install_error_handlers
from services.common.logging_config import setup_logging
from services.common.models import ApiModel, ok
from services.common.security import (
    Caller,
    require_admin_or_seller,
    require_internal_service,
    require_user,
)

from . import commands, queries
from .orchestrator import CheckoutSaga
from .schema import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CART_SERVICE_URL = os.environ.get("CART_SERVICE_URL", "http://localhost:3008")
PRODUCT_SERVICE_URL = os.environ.get("PRODUCT_SERVICE_URL", "http://localhost:3006")
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://localhost:8004")
PAYMENT_SERVICE_URL = os.environ.get("PAYMENT_SERVICE_URL", "http://localhost:8005")
HTTP_TIMEOUT_SECONDS = env_float("HTTP_TIMEOUT_SECONDS", 10.0)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
# Outbound transport override; None means real network calls
outbound_transport: httpx.AsyncBaseTransport | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    setup_logging("order-service")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class CheckoutRequest(ApiModel):
    shipping_address: str | None = None
    billing_address: str | None = None
    notes: str | None = None


class UpdateStatusRequest(ApiModel):
    status: str
    notes: str | None = None
    expected_version: int | None = None


class PaymentStatusRequest(ApiModel):
    status: str
    transaction_id: str | None = None
    payment_id: int | None = None


# ── Commands ─────────────────────────────────────


@app.post("/orders", status_code=201)
async def cmd_checkout(req: CheckoutRequest | None = None, caller: Caller = Depends(require_user)):
    """
    Turn the caller's cart into an order.

    201 whenever an order was created; ``success`` tells whether it was
    paid. Failures before the order exists come back as errors.
    """
    req = req or CheckoutRequest()
    saga = CheckoutSaga(
        CART_SERVICE_URL,
        PRODUCT_SERVICE_URL,
        INVENTORY_SERVICE_URL,
        PAYMENT_SERVICE_URL,
        async_session,
        redis_pool,
        timeout=HTTP_TIMEOUT_SECONDS,
        transport=outbound_transport,
    )
    result = await saga.execute(caller, req.shipping_address, req.billing_address, req.notes)

    order = result["order"]
    if result["payment"]:
        order["payment_transaction_id"] = result["payment"]["transaction_id"]
    if result["success"]:
        message = "Your order has been received"
    else:
        message = f"Order could not be completed: {result['error']}"
    return {
        "success": result["success"],
        "message": message,
        "data": {
            "order": order,
            "outcome": result["outcome"],
            "saga_log": result["saga_log"],
        },
    }


@app.put("/orders/{order_id}/status")
async def cmd_update_status(
    order_id: int,
    req: UpdateStatusRequest,
    caller: Caller = Depends(require_admin_or_seller),
):
    async with async_session() as session:
        change = await commands.update_status(
            session, redis_pool, order_id, req.status, caller.user_id,
            req.notes, req.expected_version,
        )
        order = await queries.get_order(session, order_id, with_history=False)
    return ok(order, f"Order status updated: {change['old_status']} → {change['status']}")


@app.put("/orders/{order_id}/payment-status", dependencies=[Depends(require_internal_service)])
async def cmd_payment_status(order_id: int, req: PaymentStatusRequest):
    async with async_session() as session:
        change = await commands.apply_payment_status(
            session, redis_pool, order_id, req.status, req.transaction_id, req.payment_id
        )
    message = "Payment status updated" if change["changed"] else "Payment status already recorded"
    return ok(change, message)


@app.delete("/orders/{order_id}")
async def cmd_cancel(order_id: int, caller: Caller = Depends(require_user)):
    async with async_session() as session:
        change = await commands.cancel_order(session, redis_pool, order_id, caller)
    return ok(change, "Order cancelled")


# ── Queries ──────────────────────────────────────


@app.get("/orders")
async def query_list_orders(
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
    caller: Caller = Depends(require_user),
):
    async with async_session() as session:
        data = await queries.list_user_orders(session, caller.user_id, status, page, limit)
    return {"success": True, "data": data["items"], "pagination": data["pagination"]}


@app.get("/orders/my-orders")
async def query_my_orders(caller: Caller = Depends(require_user)):
    async with async_session() as session:
        data = await queries.my_orders(session, caller.user_id)
    return {"success": True, "data": data, "count": len(data)}


@app.get("/orders/admin/all")
async def query_all_orders(
    status: str | None = None,
    user_id: str | None = None,
    page: int = 1,
    limit: int = 20,
    caller: Caller = Depends(require_admin_or_seller),
):
    async with async_session() as session:
        data = await queries.list_all(session, status, user_id, page, limit)
    return {"success": True, "data": data["items"], "pagination": data["pagination"]}


@app.get("/orders/{order_id}")
async def query_get_order(order_id: int, caller: Caller = Depends(require_user)):
    async with async_session() as session:
        order = await queries.get_order(
            session, order_id, user_id=None if caller.is_admin else caller.user_id
        )
    if not order:
        raise NotFound("Order not found", data={"order_id": order_id})
    return ok(order)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
