"""
Inventory Service: stock transaction log

Append-only audit trail. Every stock mutation writes exactly one row here
in the same session/transaction as the ``stocks`` update, so the two commit
or roll back together. Rows are never updated or deleted.
"""

from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import stock_transactions


async def append_transaction(
    session: AsyncSession,
    product_id: str,
    transaction_type: str,
    quantity_change: int,
    previous: tuple[int, int],
    new: tuple[int, int],
    order_id: str | None = None,
    user_id: str | None = None,
    notes: str | None = None,
    created_at: datetime | None = None,
) -> None:
    """``previous`` and ``new`` are ``(quantity, reserved_quantity)`` pairs."""
    await session.execute(
        insert(stock_transactions).values(
            product_id=product_id,
            transaction_type=transaction_type,
            quantity_change=quantity_change,
            previous_quantity=previous[0],
            previous_reserved=previous[1],
            new_quantity=new[0],
            new_reserved=new[1],
            order_id=order_id,
            user_id=user_id,
            notes=notes,
            created_at=created_at or datetime.now(timezone.utc),
        )
    )


def _row_to_dict(row) -> dict:
    return {
        "id": row.id,
        "product_id": row.product_id,
        "transaction_type": row.transaction_type,
        "quantity_change": row.quantity_change,
        "previous_quantity": row.previous_quantity,
        "previous_reserved": row.previous_reserved,
        "new_quantity": row.new_quantity,
        "new_reserved": row.new_reserved,
        "order_id": row.order_id,
        "user_id": row.user_id,
        "notes": row.notes,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def load_transactions(session: AsyncSession, product_id: str) -> list[dict]:
    result = await session.execute(
        select(stock_transactions)
        .where(stock_transactions.c.product_id == product_id)
        .order_by(stock_transactions.c.id.asc())
    )
    return [_row_to_dict(row) for row in result.fetchall()]
