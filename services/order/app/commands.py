"""
Order Service: command handlers (write side)

Every status write goes through ``_write_status``:

    UPDATE orders SET status = :new, version = :v + 1
     WHERE id = :id AND version = :v

together with its ``order_status_history`` row, in one transaction. A
write based on a stale read changes nothing and raises ``Conflict``, so a
cancel and a late payment callback can never both win.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import Conflict, NotFound
from services.common.publisher import publish_event
from services.common.security import Caller

from . import saga
from .aggregate import CANCELLED, PENDING_PAYMENT, OrderAggregate
from .events import OrderCreated, OrderStatusChanged
from .schema import order_items, order_status_history, orders

logger = logging.getLogger(__name__)

CHANNEL = "order_events"
PAYMENT_SERVICE_ACTOR = "payment-service"

_UNCHANGED = object()


async def _load(session: AsyncSession, order_id: int) -> OrderAggregate:
    row = (
        await session.execute(select(orders).where(orders.c.id == order_id).with_for_update())
    ).first()
    if row is None:
        raise NotFound("Order not found", data={"order_id": order_id})
    return OrderAggregate.from_row(row)


async def _write_status(
    session: AsyncSession,
    agg: OrderAggregate,
    new_status: str,
    changed_by: str | None,
    notes: str | None,
    expected_version: int | None = None,
    reservation_state=_UNCHANGED,
    **values,
) -> OrderStatusChanged:
    version = agg.version if expected_version is None else expected_version
    now = datetime.now(timezone.utc)
    if reservation_state is not _UNCHANGED:
        values["reservation_state"] = saga.to_dict(reservation_state)

    result = await session.execute(
        update(orders)
        .where(orders.c.id == agg.id, orders.c.version == version)
        .values(status=new_status, version=version + 1, updated_at=now, **values)
    )
    if result.rowcount == 0:
        raise Conflict(
            "Order was modified concurrently",
            data={"order_id": agg.id, "expected_version": version, "current_version": agg.version},
        )
    await session.execute(
        insert(order_status_history).values(
            order_id=agg.id,
            old_status=agg.status,
            new_status=new_status,
            changed_by=changed_by,
            notes=notes,
            created_at=now,
        )
    )
    return OrderStatusChanged(
        order_id=agg.id,
        old_status=agg.status,
        new_status=new_status,
        changed_by=changed_by,
        version=version + 1,
        timestamp=now,
    )


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    user_id: str,
    lines: list[dict],
    total: Decimal,
    shipping_address: str | None = None,
    billing_address: str | None = None,
    notes: str | None = None,
) -> int:
    """
    Persist the order, its item snapshots and the initial history entry
    in one transaction. ``lines`` are already validated and re-priced.
    """
    now = datetime.now(timezone.utc)
    try:
        result = await session.execute(
            insert(orders).values(
                user_id=user_id,
                total_price=total,
                status=PENDING_PAYMENT,
                shipping_address=shipping_address,
                billing_address=billing_address,
                notes=notes,
                version=1,
                created_at=now,
                updated_at=now,
            )
        )
        order_id = result.inserted_primary_key[0]
        await session.execute(
            insert(order_items),
            [
                {
                    "order_id": order_id,
                    "product_id": line["product_id"],
                    "product_name": line["product_name"],
                    "product_image": line.get("product_image"),
                    "price": line["price"],
                    "quantity": line["quantity"],
                    "subtotal": line["subtotal"],
                }
                for line in lines
            ],
        )
        await session.execute(
            insert(order_status_history).values(
                order_id=order_id,
                old_status=None,
                new_status=PENDING_PAYMENT,
                changed_by=user_id,
                notes="Order created",
                created_at=now,
            )
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Order %s created for user %s: %d line(s), total %s", order_id, user_id, len(lines), total)
    await publish_event(
        redis,
        CHANNEL,
        OrderCreated(
            order_id=order_id,
            user_id=user_id,
            total_price=float(total),
            item_count=len(lines),
            timestamp=now,
        ),
    )
    return order_id


async def record_reservation(
    session: AsyncSession, order_id: int, state: saga.ReservationState
) -> int:
    """
    Store the reservation state reached by checkout. Fenced like a status
    write: the order must still be PENDING_PAYMENT at the version just read,
    otherwise ``Conflict`` and nothing is stored. Returns the new version.
    """
    try:
        agg = await _load(session, order_id)
        if agg.status != PENDING_PAYMENT:
            raise Conflict(
                f"Order is {agg.status}, reservation not recorded",
                data={"order_id": order_id, "status": agg.status},
            )
        state = saga.advance(agg.reservation_state, state)
        result = await session.execute(
            update(orders)
            .where(
                orders.c.id == order_id,
                orders.c.version == agg.version,
                orders.c.status == PENDING_PAYMENT,
            )
            .values(
                reservation_state=saga.to_dict(state),
                version=agg.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount == 0:
            raise Conflict(
                "Order was modified concurrently",
                data={"order_id": order_id, "expected_version": agg.version},
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return agg.version + 1


async def record_payment_transaction(
    session: AsyncSession, order_id: int, transaction_id: str
) -> None:
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.payment_transaction_id.is_(None))
        .values(payment_transaction_id=transaction_id)
    )
    await session.commit()


async def update_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    status: str,
    changed_by: str,
    notes: str | None = None,
    expected_version: int | None = None,
) -> dict:
    try:
        agg = await _load(session, order_id)
        agg.check_admin_status(status)
        event = await _write_status(session, agg, status, changed_by, notes, expected_version)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Order %s status %s -> %s by %s", order_id, event.old_status, status, changed_by)
    await publish_event(redis, CHANNEL, event)
    return {"order_id": order_id, "old_status": event.old_status, "status": status, "version": event.version}


async def apply_payment_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    status: str,
    transaction_id: str | None = None,
    payment_id: int | None = None,
) -> dict:
    """
    Payment-service callback. A repeated status is acknowledged without a
    write; a status the order can no longer take (e.g. PAID after a
    cancel) is a ``Conflict`` and leaves the order untouched.
    """
    try:
        agg = await _load(session, order_id)
        if not agg.check_payment_status(status):
            await session.rollback()
            logger.info("Order %s already %s, callback acknowledged", order_id, status)
            return {"order_id": order_id, "status": status, "version": agg.version, "changed": False}

        values = {}
        if transaction_id:
            values["payment_transaction_id"] = transaction_id
        notes = f"Payment {status.lower()}"
        if transaction_id:
            notes += f" ({transaction_id})"
        event = await _write_status(
            session,
            agg,
            status,
            PAYMENT_SERVICE_ACTOR,
            notes,
            reservation_state=agg.reservation_after_payment(status, transaction_id),
            **values,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Order %s status %s -> %s from payment %s", order_id, event.old_status, status, payment_id
    )
    await publish_event(redis, CHANNEL, event)
    return {"order_id": order_id, "status": status, "version": event.version, "changed": True}


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    caller: Caller,
) -> dict:
    try:
        agg = await _load(session, order_id)
        if not caller.is_admin and agg.user_id != caller.user_id:
            raise NotFound("Order not found", data={"order_id": order_id})
        agg.check_cancel(caller)
        notes = "Cancelled by admin" if caller.is_admin else "Cancelled by user"
        event = await _write_status(session, agg, CANCELLED, caller.user_id, notes)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Order %s cancelled by %s (was %s)", order_id, caller.user_id, event.old_status)
    await publish_event(redis, CHANNEL, event)
    return {"order_id": order_id, "old_status": event.old_status, "status": CANCELLED, "version": event.version}


async def abort_checkout(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    status: str,
    state: saga.ReservationState,
    notes: str,
) -> dict:
    """Move an order the checkout could not complete to its failure status."""
    try:
        agg = await _load(session, order_id)
        event = await _write_status(
            session, agg, status, "checkout", notes, reservation_state=state
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.warning("Checkout aborted for order %s: %s (%s)", order_id, status, notes)
    await publish_event(redis, CHANNEL, event)
    return {"order_id": order_id, "old_status": event.old_status, "status": status, "version": event.version}
