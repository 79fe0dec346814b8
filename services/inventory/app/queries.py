"""
Inventory Service: query handlers (read side)
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import NotFound, ValidationError

from . import transaction_log
from .aggregate import StockAggregate
from .schema import stocks


def _stock_to_dict(row) -> dict:
    available = row.quantity - row.reserved_quantity
    return {
        "product_id": row.product_id,
        "quantity": row.quantity,
        "reserved_quantity": row.reserved_quantity,
        "available_stock": available,
        "in_stock": available > 0,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_stock(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(select(stocks).where(stocks.c.product_id == product_id))
    row = result.first()
    if not row:
        return None
    return _stock_to_dict(row)


async def list_stocks(
    session: AsyncSession,
    page: int = 1,
    limit: int = 20,
    low_stock: int | None = None,
) -> dict:
    """Paginated listing; ``low_stock`` keeps records with available <= threshold."""
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    available = stocks.c.quantity - stocks.c.reserved_quantity

    query = select(stocks)
    count_query = select(func.count()).select_from(stocks)
    if low_stock is not None:
        query = query.where(available <= low_stock)
        count_query = count_query.where(available <= low_stock)

    result = await session.execute(
        query.order_by(stocks.c.updated_at.desc()).limit(limit).offset((page - 1) * limit)
    )
    total = (await session.execute(count_query)).scalar_one()
    return {
        "items": [_stock_to_dict(row) for row in result.fetchall()],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": -(-total // limit),
        },
    }


async def batch_check(session: AsyncSession, items: list[dict]) -> dict:
    """
    Pre-flight availability check for a set of lines.

    Best effort only: the authoritative check is the guarded write in
    ``commands.reserve``.
    """
    if not items:
        raise ValidationError("items array is required")

    results = []
    all_available = True
    for item in items:
        row = (
            await session.execute(select(stocks).where(stocks.c.product_id == item["product_id"]))
        ).first()
        if row is None:
            results.append(
                {
                    "product_id": item["product_id"],
                    "requested": item["quantity"],
                    "available": 0,
                    "is_available": False,
                    "error": "Stock record not found",
                }
            )
            all_available = False
            continue
        available = row.quantity - row.reserved_quantity
        is_available = available >= item["quantity"]
        results.append(
            {
                "product_id": item["product_id"],
                "requested": item["quantity"],
                "available": available,
                "is_available": is_available,
            }
        )
        if not is_available:
            all_available = False

    return {"all_available": all_available, "items": results}


async def replay(session: AsyncSession, product_id: str) -> dict:
    """
    Rebuild a product's figures from its transaction log and compare them
    with the stored record.
    """
    stock = await get_stock(session, product_id)
    if stock is None:
        raise NotFound("Stock record not found", data={"product_id": product_id})

    transactions = await transaction_log.load_transactions(session, product_id)
    agg = StockAggregate.from_transactions(product_id, transactions)
    return {
        "product_id": product_id,
        "consistent": agg.matches(stock["quantity"], stock["reserved_quantity"]),
        "stored": {
            "quantity": stock["quantity"],
            "reserved_quantity": stock["reserved_quantity"],
        },
        "replayed": {
            "quantity": agg.quantity,
            "reserved_quantity": agg.reserved,
            "available_stock": agg.available,
        },
        "initial_quantity": agg.initial_quantity,
        "confirmed_total": agg.confirmed_total,
        "adjusted_total": agg.adjusted_total,
        "chain_breaks": agg.chain_breaks,
        "transaction_count": agg.version,
    }
