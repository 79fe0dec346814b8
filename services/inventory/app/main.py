"""
Inventory Service: FastAPI entrypoint

Stock ledger service. Reserve/confirm/release and batch checks are
internal (service key); adjustments and listings are for admins/sellers.
"""

import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.errors import NotFound, install_error_handlers
from services.common.logging_config import setup_logging
from services.common.models import ApiModel, ok
from services.common.security import (
    Caller,
    require_admin_or_seller,
    require_internal_service,
)

from . import commands, queries, transaction_log
from .schema import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    setup_logging("inventory-service")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class InitStockRequest(ApiModel):
    product_id: str
    initial_stock: int = 0


class StockMovementRequest(ApiModel):
    product_id: str
    quantity: int
    order_id: str | None = None
    user_id: str | None = None


class ReleaseRequest(StockMovementRequest):
    reason: str | None = None


class AdjustRequest(ApiModel):
    quantity: int
    operation: str = "SET"


class BatchItem(ApiModel):
    product_id: str
    quantity: int


class BatchCheckRequest(ApiModel):
    items: list[BatchItem]


# ── Command Endpoints (internal) ─────────────────


@app.post("/inventory/init", status_code=201, dependencies=[Depends(require_internal_service)])
async def cmd_init(req: InitStockRequest):
    """Called when a product is registered."""
    async with async_session() as session:
        data = await commands.init_stock(session, redis_pool, req.product_id, req.initial_stock)
        return ok(data, "Stock record created")


@app.post("/inventory/reserve", dependencies=[Depends(require_internal_service)])
async def cmd_reserve(req: StockMovementRequest):
    async with async_session() as session:
        data = await commands.reserve(
            session, redis_pool,
            req.product_id, req.quantity, req.order_id, req.user_id,
        )
        return ok(data, "Stock reserved")


@app.post("/inventory/confirm", dependencies=[Depends(require_internal_service)])
async def cmd_confirm(req: StockMovementRequest):
    """Payment succeeded: convert the hold into a permanent decrement."""
    async with async_session() as session:
        data = await commands.confirm(
            session, redis_pool,
            req.product_id, req.quantity, req.order_id, req.user_id,
        )
        return ok(data, "Reservation already confirmed" if data["duplicate"] else "Stock confirmed")


@app.post("/inventory/release", dependencies=[Depends(require_internal_service)])
async def cmd_release(req: ReleaseRequest):
    """Compensation: return the hold to the available pool."""
    async with async_session() as session:
        data = await commands.release(
            session, redis_pool,
            req.product_id, req.quantity, req.order_id, req.user_id, req.reason,
        )
        return ok(data, "Reservation already released" if data["duplicate"] else "Reservation released")


@app.post("/inventory/batch/check", dependencies=[Depends(require_internal_service)])
async def query_batch_check(req: BatchCheckRequest):
    async with async_session() as session:
        data = await queries.batch_check(session, [item.model_dump() for item in req.items])
        return ok(data)


# ── Admin / Seller Endpoints ─────────────────────


@app.put("/inventory/{product_id}")
async def cmd_adjust(
    product_id: str,
    req: AdjustRequest,
    caller: Caller = Depends(require_admin_or_seller),
):
    async with async_session() as session:
        data = await commands.adjust(
            session, redis_pool, product_id, req.quantity, req.operation, caller.user_id
        )
        return ok(data, "Stock updated")


@app.get("/inventory")
async def query_list_stocks(
    page: int = 1,
    limit: int = 20,
    low_stock: int | None = None,
    caller: Caller = Depends(require_admin_or_seller),
):
    async with async_session() as session:
        data = await queries.list_stocks(session, page, limit, low_stock)
        return {"success": True, "data": data["items"], "pagination": data["pagination"]}


@app.get("/inventory/{product_id}/transactions")
async def query_transactions(product_id: str, caller: Caller = Depends(require_admin_or_seller)):
    async with async_session() as session:
        return ok(await transaction_log.load_transactions(session, product_id))


@app.get("/inventory/{product_id}/replay")
async def query_replay(product_id: str, caller: Caller = Depends(require_admin_or_seller)):
    """Audit: rebuild the record from its transaction log."""
    async with async_session() as session:
        return ok(await queries.replay(session, product_id))


# ── Public Query ─────────────────────────────────


@app.get("/inventory/{product_id}")
async def query_get_stock(product_id: str):
    async with async_session() as session:
        stock = await queries.get_stock(session, product_id)
        if not stock:
            raise NotFound("Stock record not found", data={"product_id": product_id})
        return ok(stock)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
