"""
Payment Service: command handlers

process_payment
  1. generate the transaction id (before any outcome, so failures are traceable)
  2. ask the simulated gateway for a decision
  3. persist the Payment row in one transaction
  The decision is final once committed. Callbacks to inventory and order
  are delivered afterwards by callbacks.py and never roll it back.

refund_payment
  SUCCESS payments only. Refund row + status change commit together.
"""

import logging
import time
import uuid
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import (
    Conflict,
    InternalError,
    NotFound,
    PaymentNotRefundable,
    ValidationError,
)
from services.common.money import to_money
from services.common.publisher import publish_event

from .events import PaymentFailed, PaymentRefunded, PaymentSucceeded
from .gateway import PaymentSimulator
from .queries import payment_to_dict
from .schema import (
    DECLINED_CODE,
    DECLINED_MESSAGE,
    STATUS_FAILED,
    STATUS_REFUNDED,
    STATUS_SUCCESS,
    payments,
    refunds,
)

logger = logging.getLogger(__name__)

CHANNEL = "payment_events"
DEFAULT_REFUND_REASON = "Customer request"


def _stamp(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"


def new_transaction_id() -> str:
    return _stamp("TXN")


def new_refund_transaction_id() -> str:
    return _stamp("REF")


async def process_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    gateway: PaymentSimulator,
    order_id: str,
    total_amount,
    user_id: str,
    items: list[dict] | None = None,
    card_last_four: str | None = None,
) -> dict:
    transaction_id = new_transaction_id()

    if not order_id or not user_id or total_amount is None:
        raise ValidationError(
            "order_id, total_amount and user_id are required",
            data={"transaction_id": transaction_id},
        )
    amount = to_money(total_amount)
    if amount <= 0:
        raise ValidationError(
            "total_amount must be positive", data={"transaction_id": transaction_id}
        )

    logger.info(
        "New payment request %s: order=%s user=%s amount=%s",
        transaction_id, order_id, user_id, amount,
    )

    decision = await gateway.authorize(amount)
    status = STATUS_SUCCESS if decision.approved else STATUS_FAILED
    logger.info(
        "Payment %s decided %s (draw=%.2f, threshold=%.2f)",
        transaction_id, status, decision.draw, decision.threshold,
    )

    now = datetime.now(timezone.utc)
    line_items = [
        {"product_id": str(item["product_id"]), "quantity": int(item["quantity"])}
        for item in (items or [])
    ]
    try:
        result = await session.execute(
            insert(payments).values(
                transaction_id=transaction_id,
                order_id=str(order_id),
                user_id=str(user_id),
                amount=amount,
                currency="TRY",
                status=status,
                card_last_four=card_last_four,
                error_code=None if decision.approved else DECLINED_CODE,
                error_message=None if decision.approved else DECLINED_MESSAGE,
                items=line_items,
                inventory_callback_sent=False,
                order_callback_sent=False,
                refund_callback_sent=False,
                created_at=now,
                updated_at=now,
            )
        )
        payment_id = result.inserted_primary_key[0]
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Payment %s could not be recorded", transaction_id)
        raise InternalError(
            "An error occurred while processing the payment",
            data={"transaction_id": transaction_id},
        ) from exc

    row = (await session.execute(select(payments).where(payments.c.id == payment_id))).first()
    payment = payment_to_dict(row)

    if decision.approved:
        event = PaymentSucceeded(
            payment_id=payment_id,
            transaction_id=transaction_id,
            order_id=payment["order_id"],
            amount=payment["amount"],
            timestamp=now,
        )
    else:
        event = PaymentFailed(
            payment_id=payment_id,
            transaction_id=transaction_id,
            order_id=payment["order_id"],
            amount=payment["amount"],
            error_code=DECLINED_CODE,
            timestamp=now,
        )
    await publish_event(redis, CHANNEL, event)
    return payment


async def refund_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    payment_id: int,
    amount=None,
    reason: str | None = None,
) -> dict:
    if not payment_id:
        raise ValidationError("payment_id is required")
    reason = reason or DEFAULT_REFUND_REASON
    now = datetime.now(timezone.utc)

    try:
        row = (
            await session.execute(
                select(payments).where(payments.c.id == payment_id).with_for_update()
            )
        ).first()
        if row is None:
            raise NotFound("Payment not found", data={"payment_id": payment_id})
        if row.status != STATUS_SUCCESS:
            raise PaymentNotRefundable(
                "Only successful payments can be refunded",
                data={"payment_id": payment_id, "status": row.status},
            )

        refund_amount = to_money(amount) if amount is not None else to_money(row.amount)
        if refund_amount <= 0 or refund_amount > to_money(row.amount):
            raise ValidationError(
                "Refund amount must be positive and not exceed the payment amount",
                data={"payment_id": payment_id, "amount": float(row.amount)},
            )

        refund_transaction_id = new_refund_transaction_id()
        await session.execute(
            insert(refunds).values(
                payment_id=payment_id,
                refund_transaction_id=refund_transaction_id,
                amount=refund_amount,
                status=STATUS_SUCCESS,
                reason=reason,
                created_at=now,
            )
        )
        result = await session.execute(
            update(payments)
            .where(payments.c.id == payment_id, payments.c.status == STATUS_SUCCESS)
            .values(status=STATUS_REFUNDED, updated_at=now)
        )
        if result.rowcount == 0:
            raise Conflict("Payment changed while refunding", data={"payment_id": payment_id})
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Refund %s completed for payment %s, amount %s", refund_transaction_id, payment_id, refund_amount)
    await publish_event(
        redis,
        CHANNEL,
        PaymentRefunded(
            payment_id=payment_id,
            refund_transaction_id=refund_transaction_id,
            order_id=row.order_id,
            amount=float(refund_amount),
            reason=reason,
            timestamp=now,
        ),
    )
    return {
        "refund_transaction_id": refund_transaction_id,
        "original_payment_id": payment_id,
        "order_id": row.order_id,
        "transaction_id": row.transaction_id,
        "amount": float(refund_amount),
        "reason": reason,
    }
