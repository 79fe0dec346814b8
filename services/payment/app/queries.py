"""
Payment Service: query handlers
"""

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import STATUS_REFUNDED, payments


def payment_to_dict(row) -> dict:
    return {
        "payment_id": row.id,
        "transaction_id": row.transaction_id,
        "order_id": row.order_id,
        "user_id": row.user_id,
        "amount": float(row.amount),
        "currency": row.currency,
        "status": row.status,
        "card_last_four": row.card_last_four,
        "error_code": row.error_code,
        "error_message": row.error_message,
        "items": row.items or [],
        "inventory_callback_sent": bool(row.inventory_callback_sent),
        "order_callback_sent": bool(row.order_callback_sent),
        "refund_callback_sent": bool(row.refund_callback_sent),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def get_payment(session: AsyncSession, ref: str) -> dict | None:
    """Look a payment up by numeric id or by transaction id."""
    condition = payments.c.transaction_id == ref
    if ref.isdigit():
        condition = or_(payments.c.id == int(ref), condition)
    row = (await session.execute(select(payments).where(condition))).first()
    return payment_to_dict(row) if row else None


async def list_for_order(
    session: AsyncSession, order_id: str, user_id: str | None = None
) -> list[dict]:
    query = select(payments).where(payments.c.order_id == order_id)
    if user_id is not None:
        query = query.where(payments.c.user_id == user_id)
    result = await session.execute(query.order_by(payments.c.created_at.desc(), payments.c.id.desc()))
    return [payment_to_dict(row) for row in result.fetchall()]


async def pending_callbacks(session: AsyncSession, limit: int = 100) -> list[dict]:
    """Payments with at least one callback that was never confirmed as delivered."""
    result = await session.execute(
        select(payments)
        .where(
            or_(
                payments.c.inventory_callback_sent.is_(False),
                payments.c.order_callback_sent.is_(False),
                and_(
                    payments.c.status == STATUS_REFUNDED,
                    payments.c.refund_callback_sent.is_(False),
                ),
            )
        )
        .order_by(payments.c.id.asc())
        .limit(limit)
    )
    return [payment_to_dict(row) for row in result.fetchall()]
