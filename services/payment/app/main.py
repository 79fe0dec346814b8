"""
Payment Service: FastAPI entrypoint

Simulated card processor. Decisions are recorded first; the inventory and
order callbacks run as background tasks once the response has been built.
"""

import os
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import BackgroundTasks, Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.config import env_float
from services.common.errors import Forbidden, NotFound, install_error_handlers
from services.common.logging_config import setup_logging
from services.common.models import ApiModel, ok
from services.common.security import Caller, require_internal_service, require_user

from . import callbacks, commands, queries
from .gateway import PaymentSimulator
from .schema import DECLINED_CODE, DECLINED_MESSAGE, STATUS_SUCCESS, metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://localhost:8004")
ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL", "http://localhost:8001")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None

gateway = PaymentSimulator(
    success_rate=env_float("PAYMENT_SUCCESS_RATE", 95.0),
    delay_min=env_float("PAYMENT_DELAY_MIN_SECONDS", 0.5),
    delay_max=env_float("PAYMENT_DELAY_MAX_SECONDS", 1.0),
)
notifier = callbacks.CallbackNotifier(
    INVENTORY_SERVICE_URL,
    ORDER_SERVICE_URL,
    timeout=env_float("CALLBACK_TIMEOUT_SECONDS", 5.0),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    setup_logging("payment-service")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Payment Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class PaymentItem(ApiModel):
    product_id: str
    quantity: int


class ProcessPaymentRequest(ApiModel):
    order_id: str
    total_amount: Decimal
    user_id: str
    items: list[PaymentItem] = []
    card_last_four: str | None = None


class RefundRequest(ApiModel):
    payment_id: int
    amount: Decimal | None = None
    reason: str | None = None


# ── Command Endpoints (internal) ─────────────────


@app.post("/payments/process", dependencies=[Depends(require_internal_service)])
async def cmd_process(req: ProcessPaymentRequest, background_tasks: BackgroundTasks):
    async with async_session() as session:
        payment = await commands.process_payment(
            session, redis_pool, gateway,
            req.order_id, req.total_amount, req.user_id,
            [item.model_dump() for item in req.items],
            req.card_last_four,
        )

    background_tasks.add_task(callbacks.deliver_callbacks, async_session, notifier, payment)

    if payment["status"] == STATUS_SUCCESS:
        return ok(payment, "Payment completed")
    return JSONResponse(
        status_code=402,
        content={
            "success": False,
            "error": DECLINED_MESSAGE,
            "code": DECLINED_CODE,
            "data": payment,
        },
    )


@app.post("/payments/refund", dependencies=[Depends(require_internal_service)])
async def cmd_refund(req: RefundRequest, background_tasks: BackgroundTasks):
    async with async_session() as session:
        refund = await commands.refund_payment(
            session, redis_pool, req.payment_id, req.amount, req.reason
        )
        payment = await queries.get_payment(session, str(req.payment_id))

    background_tasks.add_task(callbacks.deliver_callbacks, async_session, notifier, payment)
    return ok(refund, "Refund completed")


@app.post("/payments/reconcile", dependencies=[Depends(require_internal_service)])
async def cmd_reconcile():
    """Re-send callbacks that were never confirmed as delivered."""
    results = await callbacks.redeliver_pending(async_session, notifier)
    return ok({"processed": len(results), "results": results})


# ── Queries ──────────────────────────────────────


@app.get("/payments/order/{order_id}")
async def query_order_payments(order_id: str, caller: Caller = Depends(require_user)):
    async with async_session() as session:
        owner = None if caller.is_admin else caller.user_id
        return ok(await queries.list_for_order(session, order_id, owner))


@app.get("/payments/{ref}")
async def query_payment(ref: str, caller: Caller = Depends(require_user)):
    async with async_session() as session:
        payment = await queries.get_payment(session, ref)
    if not payment:
        raise NotFound("Payment not found")
    if not caller.is_admin and payment["user_id"] != caller.user_id:
        raise Forbidden("You do not have access to this payment")
    return ok(payment)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service"}
