"""
Order Service: query handlers (read side)
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.money import format_try

from .aggregate import STATUS_TEXT
from .schema import order_items, order_status_history, orders


def _iso(value):
    return value.isoformat() if value else None


def order_to_dict(row) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "total_price": float(row.total_price),
        "formatted_total": format_try(row.total_price),
        "status": row.status,
        "shipping_address": row.shipping_address,
        "billing_address": row.billing_address,
        "notes": row.notes,
        "payment_transaction_id": row.payment_transaction_id,
        "reservation_state": row.reservation_state,
        "version": row.version,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _item_to_dict(row) -> dict:
    return {
        "product_id": row.product_id,
        "product_name": row.product_name,
        "product_image": row.product_image,
        "price": float(row.price),
        "quantity": row.quantity,
        "subtotal": float(row.subtotal),
    }


def _history_to_dict(row) -> dict:
    return {
        "old_status": row.old_status,
        "new_status": row.new_status,
        "changed_by": row.changed_by,
        "notes": row.notes,
        "created_at": _iso(row.created_at),
    }


def _paginate(page: int, limit: int) -> tuple[int, int]:
    return max(page, 1), max(min(limit, 100), 1)


def _pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)}


async def get_items(session: AsyncSession, order_id: int) -> list[dict]:
    result = await session.execute(
        select(order_items).where(order_items.c.order_id == order_id).order_by(order_items.c.id)
    )
    return [_item_to_dict(row) for row in result.fetchall()]


async def get_order(
    session: AsyncSession,
    order_id: int,
    user_id: str | None = None,
    with_history: bool = True,
) -> dict | None:
    """Order with items (and status history). ``user_id`` restricts to that owner."""
    query = select(orders).where(orders.c.id == order_id)
    if user_id is not None:
        query = query.where(orders.c.user_id == user_id)
    row = (await session.execute(query)).first()
    if not row:
        return None

    order = order_to_dict(row)
    order["items"] = await get_items(session, order_id)
    if with_history:
        result = await session.execute(
            select(order_status_history)
            .where(order_status_history.c.order_id == order_id)
            .order_by(order_status_history.c.created_at.desc(), order_status_history.c.id.desc())
        )
        order["status_history"] = [_history_to_dict(h) for h in result.fetchall()]
    return order


async def list_user_orders(
    session: AsyncSession,
    user_id: str,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    page, limit = _paginate(page, limit)
    conditions = [orders.c.user_id == user_id]
    if status:
        conditions.append(orders.c.status == status)

    result = await session.execute(
        select(orders)
        .where(*conditions)
        .order_by(orders.c.created_at.desc(), orders.c.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    items = []
    for row in result.fetchall():
        order = order_to_dict(row)
        order["items"] = await get_items(session, row.id)
        items.append(order)

    total = (
        await session.execute(select(func.count()).select_from(orders).where(*conditions))
    ).scalar_one()
    return {"items": items, "pagination": _pagination(page, limit, total)}


async def my_orders(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc(), orders.c.id.desc())
    )
    data = []
    for row in result.fetchall():
        order = order_to_dict(row)
        order["items"] = await get_items(session, row.id)
        order["status_text"] = STATUS_TEXT.get(row.status, row.status)
        data.append(order)
    return data


async def list_all(
    session: AsyncSession,
    status: str | None = None,
    user_id: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """Admin listing with per-order item counts."""
    page, limit = _paginate(page, limit)
    conditions = []
    if status:
        conditions.append(orders.c.status == status)
    if user_id:
        conditions.append(orders.c.user_id == user_id)

    item_count = (
        select(func.count())
        .select_from(order_items)
        .where(order_items.c.order_id == orders.c.id)
        .scalar_subquery()
        .label("item_count")
    )
    result = await session.execute(
        select(orders, item_count)
        .where(*conditions)
        .order_by(orders.c.created_at.desc(), orders.c.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    items = []
    for row in result.fetchall():
        order = order_to_dict(row)
        order["item_count"] = row.item_count
        items.append(order)

    total = (
        await session.execute(select(func.count()).select_from(orders).where(*conditions))
    ).scalar_one()
    return {"items": items, "pagination": _pagination(page, limit, total)}
