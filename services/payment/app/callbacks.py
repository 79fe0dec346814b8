"""
Payment Service: downstream callbacks

After a payment is decided two notifications go out, outside the payment
transaction. A refund adds a third:

  inventory  SUCCESS -> POST /inventory/confirm per line
             FAILED  -> POST /inventory/release per line
  order      PUT /orders/{id}/payment-status (PAID / PAYMENT_FAILED)
  refund     PUT /orders/{id}/payment-status REFUNDED, once the order
             callback for the original charge has gone through

Each callback has a delivery flag on the payment row, set only when every
call of that callback came back without error. Unset flags are picked up later by
``redeliver_pending`` (POST /payments/reconcile). Redelivery is safe
because inventory settles keyed reservations once and the order service
treats a repeated status as a no-op.
"""

import logging
from datetime import datetime, timezone

import httpx
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from services.common.errors import ServiceError
from services.common.http import make_client, unwrap
from services.common.security import internal_headers

from . import queries
from .schema import STATUS_FAILED, STATUS_REFUNDED, STATUS_SUCCESS, payments

logger = logging.getLogger(__name__)

# Order status for the original charge. A refunded payment was a successful one.
ORDER_STATUS_FOR_PAYMENT = {
    STATUS_SUCCESS: "PAID",
    STATUS_FAILED: "PAYMENT_FAILED",
    STATUS_REFUNDED: "PAID",
}
ORDER_STATUS_REFUNDED = "REFUNDED"


class CallbackNotifier:
    def __init__(
        self,
        inventory_url: str,
        order_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.inventory_url = inventory_url.rstrip("/")
        self.order_url = order_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def notify_inventory(self, payment: dict) -> bool:
        items = payment.get("items") or []
        if not items:
            logger.info("Inventory callback skipped for %s: no line items", payment["transaction_id"])
            return True

        action = "release" if payment["status"] == STATUS_FAILED else "confirm"
        delivered = True
        async with make_client(self.timeout, self.transport) as client:
            for item in items:
                body = {
                    "product_id": item["product_id"],
                    "quantity": item["quantity"],
                    "order_id": str(payment["order_id"]),
                    "user_id": payment.get("user_id"),
                }
                if action == "release":
                    body["reason"] = f"Payment failed ({payment['transaction_id']})"
                try:
                    resp = await client.post(
                        f"{self.inventory_url}/inventory/{action}",
                        json=body,
                        headers=internal_headers(),
                    )
                    unwrap(resp)
                    logger.info("Inventory %s delivered: %s x%s", action, item["product_id"], item["quantity"])
                except (httpx.HTTPError, ServiceError) as exc:
                    delivered = False
                    logger.warning(
                        "Inventory %s failed for %s (order %s): %s",
                        action, item["product_id"], payment["order_id"], exc,
                    )
        return delivered

    async def notify_order(self, payment: dict, status: str | None = None) -> bool:
        status = status or ORDER_STATUS_FOR_PAYMENT[payment["status"]]
        try:
            async with make_client(self.timeout, self.transport) as client:
                resp = await client.put(
                    f"{self.order_url}/orders/{payment['order_id']}/payment-status",
                    json={
                        "status": status,
                        "transaction_id": payment["transaction_id"],
                        "payment_id": payment["payment_id"],
                    },
                    headers=internal_headers(),
                )
                unwrap(resp)
        except (httpx.HTTPError, ServiceError) as exc:
            logger.warning(
                "Order callback %s failed for order %s: %s", status, payment["order_id"], exc
            )
            return False
        logger.info("Order callback delivered: order %s -> %s", payment["order_id"], status)
        return True

    async def notify_refund(self, payment: dict) -> bool:
        return await self.notify_order(payment, ORDER_STATUS_REFUNDED)


async def _mark_delivered(
    session_factory: sessionmaker,
    payment_id: int,
    inventory: bool,
    order: bool,
    refund: bool = False,
) -> None:
    values = {}
    if inventory:
        values["inventory_callback_sent"] = True
    if order:
        values["order_callback_sent"] = True
    if refund:
        values["refund_callback_sent"] = True
    if not values:
        return
    values["updated_at"] = datetime.now(timezone.utc)
    async with session_factory() as session:
        await session.execute(update(payments).where(payments.c.id == payment_id).values(**values))
        await session.commit()


async def deliver_callbacks(
    session_factory: sessionmaker,
    notifier: CallbackNotifier,
    payment: dict,
) -> dict:
    """
    Send whichever callbacks the payment still owes and record the ones
    that went through. Never raises: this runs as a background task.

    For a refunded payment the order first hears the original outcome, then
    REFUNDED, so an order that missed PAID can still take the refund.
    """
    inventory_ok = payment.get("inventory_callback_sent", False)
    order_ok = payment.get("order_callback_sent", False)
    refunded = payment["status"] == STATUS_REFUNDED
    refund_ok = payment.get("refund_callback_sent", False)
    if not inventory_ok:
        inventory_ok = await notifier.notify_inventory(payment)
    if not order_ok:
        order_ok = await notifier.notify_order(payment)
    if refunded and order_ok and not refund_ok:
        refund_ok = await notifier.notify_refund(payment)
    try:
        await _mark_delivered(
            session_factory, payment["payment_id"], inventory_ok, order_ok, refunded and refund_ok
        )
    except Exception:
        logger.exception("Could not record callback delivery for payment %s", payment["payment_id"])
    result = {
        "payment_id": payment["payment_id"],
        "inventory_callback_sent": inventory_ok,
        "order_callback_sent": order_ok,
    }
    if refunded:
        result["refund_callback_sent"] = refund_ok
    return result


async def redeliver_pending(
    session_factory: sessionmaker,
    notifier: CallbackNotifier,
    limit: int = 100,
) -> list[dict]:
    """Reconciliation sweep over payments with undelivered callbacks."""
    async with session_factory() as session:
        pending = await queries.pending_callbacks(session, limit)
    if pending:
        logger.info("Redelivering callbacks for %d payment(s)", len(pending))
    return [await deliver_callbacks(session_factory, notifier, payment) for payment in pending]
