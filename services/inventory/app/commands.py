"""
Inventory Service: ledger commands (write side)

The inventory service is the only component allowed to change stock.
Every command here is one unit of work: the ``stocks`` update, the
reservation bookkeeping and the ``stock_transactions`` row commit together
or roll back together.

Concurrency control for a product, in order:
  1. an in-process ``asyncio.Lock`` per product (single instance)
  2. ``SELECT ... FOR UPDATE`` on the stock row (several instances, Postgres)
  3. a conditional ``UPDATE ... WHERE <predicate still holds>`` whose
     rowcount is checked. This last step is what actually prevents oversell:
     if either lock is weaker than expected, the write validates itself.

Keyed reservations: when a call carries an ``order_id`` the hold is also
tracked per (order, product). A confirm/release replayed for a reservation
that is already settled is a no-op instead of subtracting twice.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import (
    AlreadyExists,
    Conflict,
    InsufficientReservation,
    InsufficientStock,
    NotFound,
    ReservationRaceLost,
    ValidationError,
)
from services.common.publisher import publish_event

from . import transaction_log
from .events import (
    StockAdjusted,
    StockConfirmed,
    StockInitialized,
    StockReleased,
    StockReserved,
)
from .schema import (
    RESERVATION_CONFIRMED,
    RESERVATION_RELEASED,
    RESERVATION_RESERVED,
    TX_ADD,
    TX_CONFIRM,
    TX_INIT,
    TX_RELEASE,
    TX_REMOVE,
    TX_RESERVE,
    stock_reservations,
    stocks,
)

logger = logging.getLogger(__name__)

CHANNEL = "inventory_events"

ADJUST_OPERATIONS = ("SET", "ADD", "REMOVE")

# Weak values: a lock lives only while some coroutine holds or awaits it.
_product_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(product_id: str) -> asyncio.Lock:
    lock = _product_locks.get(product_id)
    if lock is None:
        lock = asyncio.Lock()
        _product_locks[product_id] = lock
    return lock


@asynccontextmanager
async def _unit_of_work(session: AsyncSession, product_id: str):
    lock = _lock_for(product_id)
    async with lock:
        try:
            yield
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_positive(quantity: int) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationError("product_id and a positive quantity are required")


def _figures(product_id: str, stock_quantity: int, reserved: int, **extra) -> dict:
    """Stock figures after a command; ``extra`` carries per-command fields such as the moved ``quantity``."""
    return {
        "product_id": product_id,
        "stock_quantity": stock_quantity,
        "reserved_quantity": reserved,
        "available_stock": stock_quantity - reserved,
        **extra,
    }


async def _locked_stock(session: AsyncSession, product_id: str):
    result = await session.execute(
        select(stocks).where(stocks.c.product_id == product_id).with_for_update()
    )
    row = result.first()
    if row is None:
        raise NotFound("Stock record not found", data={"product_id": product_id})
    return row


async def _locked_reservation(session: AsyncSession, order_id: str | None, product_id: str):
    if not order_id:
        return None
    result = await session.execute(
        select(stock_reservations)
        .where(
            stock_reservations.c.order_id == order_id,
            stock_reservations.c.product_id == product_id,
        )
        .with_for_update()
    )
    return result.first()


async def _settle_reservation(
    session: AsyncSession,
    reservation,
    quantity: int,
    final_status: str,
    now: datetime,
) -> None:
    remaining = reservation.quantity - quantity
    await session.execute(
        update(stock_reservations)
        .where(stock_reservations.c.id == reservation.id)
        .values(
            quantity=remaining,
            status=final_status if remaining == 0 else RESERVATION_RESERVED,
            updated_at=now,
        )
    )


def _check_settlement(reservation, quantity: int, target_status: str) -> bool:
    """
    Decide what a confirm/release means for an existing keyed reservation.

    Returns True when the call is a replay of an already applied settlement.
    """
    if reservation is None:
        return False
    if reservation.status == target_status:
        return True
    if reservation.status != RESERVATION_RESERVED:
        raise Conflict(
            f"Reservation is already {reservation.status.lower()}",
            data={"order_id": reservation.order_id, "product_id": reservation.product_id},
        )
    if reservation.quantity < quantity:
        raise InsufficientReservation(
            "Insufficient reserved quantity for this order",
            data={
                "product_id": reservation.product_id,
                "requested_quantity": quantity,
                "reserved_quantity": reservation.quantity,
            },
        )
    return False


# ── init ─────────────────────────────────────────


async def init_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    initial_stock: int = 0,
) -> dict:
    """Create the stock record for a newly registered product."""
    if not product_id:
        raise ValidationError("product_id is required")
    if initial_stock is None or initial_stock < 0:
        raise ValidationError("initial_stock must be zero or positive")

    now = _now()
    async with _unit_of_work(session, product_id):
        existing = await session.execute(
            select(stocks.c.id).where(stocks.c.product_id == product_id)
        )
        if existing.first() is not None:
            raise AlreadyExists(
                "A stock record already exists for this product",
                data={"product_id": product_id},
            )
        try:
            await session.execute(
                insert(stocks).values(
                    product_id=product_id,
                    quantity=initial_stock,
                    reserved_quantity=0,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError as exc:
            # another instance created it between our check and insert
            raise AlreadyExists(
                "A stock record already exists for this product",
                data={"product_id": product_id},
            ) from exc
        await transaction_log.append_transaction(
            session,
            product_id,
            TX_INIT,
            initial_stock,
            previous=(0, 0),
            new=(initial_stock, 0),
            notes="Stock record created",
            created_at=now,
        )

    logger.info("Stock record created: %s, quantity=%d", product_id, initial_stock)
    await publish_event(
        redis,
        CHANNEL,
        StockInitialized(product_id=product_id, quantity=initial_stock, timestamp=now),
    )
    return _figures(product_id, initial_stock, 0)


# ── reserve ──────────────────────────────────────


async def reserve(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
    order_id: str | None = None,
    user_id: str | None = None,
) -> dict:
    """
    Place a hold on available stock (checkout time).

    Raises InsufficientStock when available < quantity and
    ReservationRaceLost when the guarded write matched no row. In both
    cases nothing is written.
    """
    _require_positive(quantity)
    now = _now()

    async with _unit_of_work(session, product_id):
        stock = await _locked_stock(session, product_id)
        reservation = await _locked_reservation(session, order_id, product_id)
        if reservation is not None and reservation.status != RESERVATION_RESERVED:
            raise Conflict(
                f"Reservation for this order is already {reservation.status.lower()}",
                data={"order_id": order_id, "product_id": product_id},
            )

        available = stock.quantity - stock.reserved_quantity
        if available < quantity:
            raise InsufficientStock(
                "Insufficient stock",
                data={
                    "product_id": product_id,
                    "requested_quantity": quantity,
                    "available_stock": available,
                },
            )

        result = await session.execute(
            update(stocks)
            .where(
                stocks.c.product_id == product_id,
                (stocks.c.quantity - stocks.c.reserved_quantity) >= quantity,
            )
            .values(reserved_quantity=stocks.c.reserved_quantity + quantity, updated_at=now)
        )
        if result.rowcount == 0:
            raise ReservationRaceLost(
                "Stock reservation failed (concurrent update)",
                data={"product_id": product_id, "requested_quantity": quantity},
            )

        if order_id:
            if reservation is None:
                await session.execute(
                    insert(stock_reservations).values(
                        order_id=order_id,
                        product_id=product_id,
                        quantity=quantity,
                        status=RESERVATION_RESERVED,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                await session.execute(
                    update(stock_reservations)
                    .where(stock_reservations.c.id == reservation.id)
                    .values(quantity=stock_reservations.c.quantity + quantity, updated_at=now)
                )

        new_reserved = stock.reserved_quantity + quantity
        await transaction_log.append_transaction(
            session,
            product_id,
            TX_RESERVE,
            quantity,
            previous=(stock.quantity, stock.reserved_quantity),
            new=(stock.quantity, new_reserved),
            order_id=order_id,
            user_id=user_id,
            notes="Stock reserved",
            created_at=now,
        )

    new_available = available - quantity
    logger.info(
        "Reserved %s x%d for order %s (available now %d)",
        product_id, quantity, order_id, new_available,
    )
    await publish_event(
        redis,
        CHANNEL,
        StockReserved(
            product_id=product_id,
            order_id=order_id,
            quantity=quantity,
            available=new_available,
            timestamp=now,
        ),
    )
    return _figures(
        product_id, stock.quantity, new_reserved, quantity=quantity, duplicate=False
    )


# ── confirm ──────────────────────────────────────


async def confirm(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
    order_id: str | None = None,
    user_id: str | None = None,
) -> dict:
    """
    Turn a hold into a permanent decrement (payment succeeded).

    quantity and reserved_quantity drop by the same amount in one write.
    """
    _require_positive(quantity)
    now = _now()

    async with _unit_of_work(session, product_id):
        stock = await _locked_stock(session, product_id)
        reservation = await _locked_reservation(session, order_id, product_id)
        if _check_settlement(reservation, quantity, RESERVATION_CONFIRMED):
            logger.info("Confirm replay ignored: %s for order %s", product_id, order_id)
            return _figures(
                product_id, stock.quantity, stock.reserved_quantity,
                quantity=quantity, duplicate=True,
            )

        if stock.reserved_quantity < quantity:
            raise InsufficientReservation(
                "Insufficient reserved quantity",
                data={
                    "product_id": product_id,
                    "requested_quantity": quantity,
                    "reserved_quantity": stock.reserved_quantity,
                },
            )

        result = await session.execute(
            update(stocks)
            .where(
                stocks.c.product_id == product_id,
                stocks.c.reserved_quantity >= quantity,
                stocks.c.quantity >= quantity,
            )
            .values(
                quantity=stocks.c.quantity - quantity,
                reserved_quantity=stocks.c.reserved_quantity - quantity,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            raise ReservationRaceLost(
                "Stock confirmation failed (concurrent update)",
                data={"product_id": product_id, "requested_quantity": quantity},
            )
        if reservation is not None:
            await _settle_reservation(session, reservation, quantity, RESERVATION_CONFIRMED, now)

        new_quantity = stock.quantity - quantity
        new_reserved = stock.reserved_quantity - quantity
        await transaction_log.append_transaction(
            session,
            product_id,
            TX_CONFIRM,
            -quantity,
            previous=(stock.quantity, stock.reserved_quantity),
            new=(new_quantity, new_reserved),
            order_id=order_id,
            user_id=user_id,
            notes="Order confirmed, stock deducted",
            created_at=now,
        )

    logger.info("Confirmed %s x%d for order %s (quantity now %d)", product_id, quantity, order_id, new_quantity)
    await publish_event(
        redis,
        CHANNEL,
        StockConfirmed(
            product_id=product_id,
            order_id=order_id,
            quantity=quantity,
            remaining_quantity=new_quantity,
            timestamp=now,
        ),
    )
    return _figures(product_id, new_quantity, new_reserved, quantity=quantity, duplicate=False)


# ── release ──────────────────────────────────────


async def release(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
    order_id: str | None = None,
    user_id: str | None = None,
    reason: str | None = None,
) -> dict:
    """
    Return a hold to the available pool (payment failed, saga compensation).

    Only reserved_quantity changes.
    """
    _require_positive(quantity)
    now = _now()
    notes = reason or "Reservation released"

    async with _unit_of_work(session, product_id):
        stock = await _locked_stock(session, product_id)
        reservation = await _locked_reservation(session, order_id, product_id)
        if _check_settlement(reservation, quantity, RESERVATION_RELEASED):
            logger.info("Release replay ignored: %s for order %s", product_id, order_id)
            return _figures(
                product_id, stock.quantity, stock.reserved_quantity,
                quantity=quantity, duplicate=True,
            )

        if stock.reserved_quantity < quantity:
            raise InsufficientReservation(
                "Insufficient reserved quantity",
                data={
                    "product_id": product_id,
                    "requested_quantity": quantity,
                    "reserved_quantity": stock.reserved_quantity,
                },
            )

        result = await session.execute(
            update(stocks)
            .where(
                stocks.c.product_id == product_id,
                stocks.c.reserved_quantity >= quantity,
            )
            .values(reserved_quantity=stocks.c.reserved_quantity - quantity, updated_at=now)
        )
        if result.rowcount == 0:
            raise ReservationRaceLost(
                "Reservation release failed (concurrent update)",
                data={"product_id": product_id, "requested_quantity": quantity},
            )
        if reservation is not None:
            await _settle_reservation(session, reservation, quantity, RESERVATION_RELEASED, now)

        new_reserved = stock.reserved_quantity - quantity
        await transaction_log.append_transaction(
            session,
            product_id,
            TX_RELEASE,
            quantity,
            previous=(stock.quantity, stock.reserved_quantity),
            new=(stock.quantity, new_reserved),
            order_id=order_id,
            user_id=user_id,
            notes=notes,
            created_at=now,
        )

    new_available = stock.quantity - new_reserved
    logger.info("Released %s x%d for order %s (%s)", product_id, quantity, order_id, notes)
    await publish_event(
        redis,
        CHANNEL,
        StockReleased(
            product_id=product_id,
            order_id=order_id,
            quantity=quantity,
            reason=reason,
            available=new_available,
            timestamp=now,
        ),
    )
    return _figures(product_id, stock.quantity, new_reserved, quantity=quantity, duplicate=False)


# ── adjust ───────────────────────────────────────


async def adjust(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    quantity: int,
    operation: str = "SET",
    user_id: str | None = None,
) -> dict:
    """
    Administrative stock correction.

    SET and REMOVE never take quantity below what is currently reserved;
    an adjustment does not invalidate holds.
    """
    if quantity is None:
        raise ValidationError("quantity is required")
    if quantity < 0:
        raise ValidationError("quantity must be zero or positive")
    op = (operation or "SET").upper()
    if op not in ADJUST_OPERATIONS:
        raise ValidationError(
            f"Invalid operation. Valid operations: {', '.join(ADJUST_OPERATIONS)}"
        )
    now = _now()

    async with _unit_of_work(session, product_id):
        result = await session.execute(
            select(stocks).where(stocks.c.product_id == product_id).with_for_update()
        )
        stock = result.first()

        if stock is None:
            await session.execute(
                insert(stocks).values(
                    product_id=product_id,
                    quantity=quantity,
                    reserved_quantity=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            await transaction_log.append_transaction(
                session,
                product_id,
                TX_INIT,
                quantity,
                previous=(0, 0),
                new=(quantity, 0),
                user_id=user_id,
                notes="Stock record created by adjustment",
                created_at=now,
            )
            previous_quantity, new_quantity, reserved = 0, quantity, 0
        else:
            reserved = stock.reserved_quantity
            previous_quantity = stock.quantity
            if op == "ADD":
                new_quantity = previous_quantity + quantity
                tx_type = TX_ADD
            elif op == "REMOVE":
                new_quantity = max(reserved, previous_quantity - quantity)
                tx_type = TX_REMOVE
            else:
                new_quantity = max(reserved, quantity)
                tx_type = TX_ADD if new_quantity >= previous_quantity else TX_REMOVE

            updated = await session.execute(
                update(stocks)
                .where(
                    stocks.c.product_id == product_id,
                    stocks.c.reserved_quantity <= new_quantity,
                )
                .values(quantity=new_quantity, updated_at=now)
            )
            if updated.rowcount == 0:
                raise ReservationRaceLost(
                    "Stock adjustment failed (concurrent reservation)",
                    data={"product_id": product_id},
                )
            await transaction_log.append_transaction(
                session,
                product_id,
                tx_type,
                new_quantity - previous_quantity,
                previous=(previous_quantity, reserved),
                new=(new_quantity, reserved),
                user_id=user_id,
                notes=f"Stock {op} adjustment",
                created_at=now,
            )

    logger.info("Stock adjusted: %s %s %d -> %d", product_id, op, previous_quantity, new_quantity)
    await publish_event(
        redis,
        CHANNEL,
        StockAdjusted(
            product_id=product_id,
            operation=op,
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            user_id=user_id,
            timestamp=now,
        ),
    )
    return _figures(
        product_id, new_quantity, reserved,
        operation=op, previous_quantity=previous_quantity,
    )
