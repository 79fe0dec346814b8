"""
Order Service: checkout saga orchestrator

Orchestration-style saga. The order service drives each step over HTTP
and compensates when a later step fails. No distributed transaction: each
service commits its own part.

  Flow:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. Cart: fetch the caller's cart                            │
  │  2. Catalog: validate + re-price every line (sequential)     │
  │  3. Order row + items + history, one local transaction       │
  │  4. Inventory: reserve each line, keyed by order id          │
  │     └─ failure → release the lines already held,             │
  │                  order CANCELLED (compensation)              │
  │  5. Payment: process the recomputed total                    │
  │     ├─ 200 / 402 → outcome recorded; the payment service     │
  │     │              calls back inventory and order itself     │
  │     └─ unreachable → release holds, order PAYMENT_FAILED     │
  │  6. Cart: clear (best effort)                                │
  └──────────────────────────────────────────────────────────────┘

Steps 1-2 fail fast: nothing has been written yet, so the error is raised
to the caller. From step 3 on an order exists and the saga always returns
it with a status.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from services.common.catalog import fetch_product
from services.common.errors import (
    Conflict,
    EmptyCart,
    InsufficientStock,
    ServiceError,
    UpstreamUnavailable,
)
from services.common.http import make_client, unwrap
from services.common.money import to_money
from services.common.publisher import publish_event
from services.common.security import Caller, internal_headers

from . import commands, queries, saga
from .aggregate import CANCELLED, PAYMENT_FAILED
from .events import CheckoutFinished

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "COMPLETED"
OUTCOME_DECLINED = "DECLINED"
OUTCOME_COMPENSATED = "COMPENSATED"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CheckoutSaga:
    """Checkout saga for a single caller's cart."""

    def __init__(
        self,
        cart_service_url: str,
        product_service_url: str,
        inventory_service_url: str,
        payment_service_url: str,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.cart_url = cart_service_url.rstrip("/")
        self.product_url = product_service_url.rstrip("/")
        self.inventory_url = inventory_service_url.rstrip("/")
        self.payment_url = payment_service_url.rstrip("/")
        self.session_factory = session_factory
        self.redis = redis
        self.timeout = timeout
        self.transport = transport

    async def execute(
        self,
        caller: Caller,
        shipping_address: str | None = None,
        billing_address: str | None = None,
        notes: str | None = None,
    ) -> dict:
        saga_log: list[dict] = []

        async with make_client(self.timeout, self.transport) as client:
            # ── Step 1: fetch the cart ───────────────────
            self._begin(saga_log, "FetchCart")
            cart_items = await self._fetch_cart(client, caller, saga_log)

            # ── Step 2: validate against the catalog ─────
            self._begin(saga_log, "ValidateProducts")
            lines, total = await self._validate_lines(client, cart_items, saga_log)

            # ── Step 3: persist the order ────────────────
            self._begin(saga_log, "CreateOrder")
            async with self.session_factory() as session:
                order_id = await commands.create_order(
                    session, self.redis, caller.user_id, lines, total,
                    shipping_address, billing_address, notes,
                )
            self._complete(saga_log, order_id=order_id)

            # ── Step 4: reserve inventory ────────────────
            self._begin(saga_log, "ReserveInventory")
            held, error = await self._reserve_lines(client, order_id, caller.user_id, lines)
            if error is not None:
                self._fail(saga_log, error)
                state = saga.Failed(error)
                if held:
                    self._begin(saga_log, "ReleaseInventory (COMPENSATING)")
                    await self._release_lines(client, order_id, caller.user_id, held, "Checkout aborted")
                    state = saga.advance(saga.Reserved(tuple(held)), saga.Released(error))
                    self._complete(saga_log)
                self._begin(saga_log, "CancelOrder (COMPENSATING)")
                async with self.session_factory() as session:
                    await commands.abort_checkout(
                        session, self.redis, order_id, CANCELLED, state,
                        f"Inventory reservation failed: {error}",
                    )
                self._complete(saga_log)
                return await self._finish(order_id, OUTCOME_COMPENSATED, None, saga_log, error)

            reserved = saga.Reserved(tuple(held))
            try:
                async with self.session_factory() as session:
                    await commands.record_reservation(session, order_id, reserved)
            except Conflict as e:
                # the order moved on (e.g. cancelled) while its lines were being held
                self._fail(saga_log, e.message)
                self._begin(saga_log, "ReleaseInventory (COMPENSATING)")
                await self._release_lines(
                    client, order_id, caller.user_id, held, "Order changed during checkout"
                )
                self._complete(saga_log)
                return await self._finish(order_id, OUTCOME_COMPENSATED, None, saga_log, e.message)
            self._complete(saga_log)

            # ── Step 5: payment ──────────────────────────
            self._begin(saga_log, "ProcessPayment")
            try:
                payment = await self._process_payment(client, order_id, caller.user_id, lines, total)
            except (httpx.HTTPError, ServiceError) as e:
                error = f"Payment service unavailable: {e}"
                self._fail(saga_log, error)

                self._begin(saga_log, "ReleaseInventory (COMPENSATING)")
                await self._release_lines(client, order_id, caller.user_id, held, "Payment unavailable")
                self._complete(saga_log)

                self._begin(saga_log, "FailOrder (COMPENSATING)")
                async with self.session_factory() as session:
                    await commands.abort_checkout(
                        session, self.redis, order_id, PAYMENT_FAILED,
                        saga.advance(reserved, saga.Released(error)), error,
                    )
                self._complete(saga_log)
                await self._clear_cart(client, caller, saga_log)
                return await self._finish(order_id, OUTCOME_COMPENSATED, None, saga_log, error)

            if payment.get("transaction_id"):
                async with self.session_factory() as session:
                    await commands.record_payment_transaction(
                        session, order_id, payment["transaction_id"]
                    )
            if payment["approved"]:
                self._complete(saga_log, transaction_id=payment.get("transaction_id"))
            else:
                self._fail(saga_log, payment.get("error") or "Payment declined")
                saga_log[-1]["transaction_id"] = payment.get("transaction_id")

            # ── Step 6: clear the cart ───────────────────
            await self._clear_cart(client, caller, saga_log)

        outcome = OUTCOME_COMPLETED if payment["approved"] else OUTCOME_DECLINED
        return await self._finish(
            order_id, outcome, payment, saga_log,
            None if payment["approved"] else payment.get("error"),
        )

    # ── Steps ────────────────────────────────────

    async def _fetch_cart(self, client: httpx.AsyncClient, caller: Caller, saga_log: list[dict]) -> list[dict]:
        try:
            resp = await client.get(f"{self.cart_url}/cart", headers=caller.headers())
            body = unwrap(resp)
        except httpx.HTTPError as e:
            self._fail(saga_log, str(e))
            raise UpstreamUnavailable("Could not reach the cart service. Please try again.") from e
        except ServiceError as e:
            self._fail(saga_log, e.message)
            raise

        items = (body.get("data") or {}).get("items") or []
        if not items:
            self._fail(saga_log, "Cart is empty")
            raise EmptyCart("Your cart is empty")
        self._complete(saga_log, item_count=len(items))
        return items

    async def _validate_lines(
        self, client: httpx.AsyncClient, cart_items: list[dict], saga_log: list[dict]
    ) -> tuple[list[dict], Decimal]:
        """Re-price each line from the catalog; cart prices are never trusted."""
        lines = []
        total = Decimal("0.00")
        for item in cart_items:
            product_id = str(item["product_id"])
            quantity = int(item["quantity"])
            try:
                product = await fetch_product(client, self.product_url, product_id)
            except ServiceError as e:
                self._fail(saga_log, f"{product_id}: {e.message}")
                raise

            stock = int(product.get("stock", 0))
            if stock < quantity:
                self._fail(saga_log, f"insufficient stock for {product_id}")
                raise InsufficientStock(
                    f"Insufficient stock: {product.get('name') or product_id}",
                    data={
                        "product_id": product_id,
                        "requested_quantity": quantity,
                        "available_stock": stock,
                    },
                )

            price = to_money(product["price"])
            subtotal = price * quantity
            images = product.get("images") or []
            lines.append(
                {
                    "product_id": product_id,
                    "product_name": product.get("name") or item.get("name") or product_id,
                    "product_image": images[0] if images else None,
                    "price": price,
                    "quantity": quantity,
                    "subtotal": subtotal,
                }
            )
            total += subtotal
            logger.info("Validated %s: %s x %s = %s", product_id, price, quantity, subtotal)

        self._complete(saga_log, total=str(total))
        return lines, total

    async def _reserve_lines(
        self, client: httpx.AsyncClient, order_id: int, user_id: str, lines: list[dict]
    ) -> tuple[list[tuple[str, int]], str | None]:
        held: list[tuple[str, int]] = []
        for line in lines:
            try:
                resp = await client.post(
                    f"{self.inventory_url}/inventory/reserve",
                    json={
                        "product_id": line["product_id"],
                        "quantity": line["quantity"],
                        "order_id": str(order_id),
                        "user_id": user_id,
                    },
                    headers=internal_headers(),
                )
                unwrap(resp)
            except ServiceError as e:
                return held, f"{line['product_id']}: {e.message}"
            except httpx.HTTPError as e:
                return held, f"{line['product_id']}: inventory service unavailable ({e})"
            held.append((line["product_id"], line["quantity"]))
        return held, None

    async def _release_lines(
        self,
        client: httpx.AsyncClient,
        order_id: int,
        user_id: str,
        held: list[tuple[str, int]],
        reason: str,
    ) -> None:
        for product_id, quantity in held:
            try:
                resp = await client.post(
                    f"{self.inventory_url}/inventory/release",
                    json={
                        "product_id": product_id,
                        "quantity": quantity,
                        "order_id": str(order_id),
                        "user_id": user_id,
                        "reason": reason,
                    },
                    headers=internal_headers(),
                )
                unwrap(resp)
            except (httpx.HTTPError, ServiceError):
                logger.exception("Compensating release failed for order %s, product %s", order_id, product_id)

    async def _process_payment(
        self,
        client: httpx.AsyncClient,
        order_id: int,
        user_id: str,
        lines: list[dict],
        total: Decimal,
    ) -> dict:
        resp = await client.post(
            f"{self.payment_url}/payments/process",
            json={
                "order_id": str(order_id),
                "total_amount": str(total),
                "user_id": user_id,
                "items": [{"product_id": line["product_id"], "quantity": line["quantity"]} for line in lines],
            },
            headers=internal_headers(),
        )
        if resp.status_code == 402:
            body = resp.json()
            data = body.get("data") or {}
            return {
                "approved": False,
                "transaction_id": data.get("transaction_id"),
                "status": data.get("status"),
                "error": body.get("error"),
            }
        data = unwrap(resp).get("data") or {}
        return {
            "approved": True,
            "transaction_id": data.get("transaction_id"),
            "status": data.get("status"),
            "error": None,
        }

    async def _clear_cart(self, client: httpx.AsyncClient, caller: Caller, saga_log: list[dict]) -> None:
        self._begin(saga_log, "ClearCart")
        try:
            unwrap(await client.delete(f"{self.cart_url}/cart", headers=caller.headers()))
            self._complete(saga_log)
        except (httpx.HTTPError, ServiceError) as e:
            logger.warning("Cart clear failed for user %s: %s", caller.user_id, e)
            self._fail(saga_log, str(e))

    async def _finish(
        self,
        order_id: int,
        outcome: str,
        payment: dict | None,
        saga_log: list[dict],
        error: str | None,
    ) -> dict:
        async with self.session_factory() as session:
            order = await queries.get_order(session, order_id, with_history=False)
        await publish_event(
            self.redis,
            commands.CHANNEL,
            CheckoutFinished(
                order_id=order_id,
                outcome=outcome,
                saga_log=saga_log,
                timestamp=datetime.now(timezone.utc),
            ),
        )
        logger.info("Checkout for order %s finished: %s", order_id, outcome)
        return {
            "success": outcome == OUTCOME_COMPLETED,
            "outcome": outcome,
            "error": error,
            "order": order,
            "payment": payment,
            "saga_log": saga_log,
        }

    # ── Saga log ─────────────────────────────────

    @staticmethod
    def _begin(saga_log: list[dict], action: str) -> None:
        saga_log.append(
            {
                "step": len(saga_log) + 1,
                "action": action,
                "status": "EXECUTING",
                "timestamp": _now(),
            }
        )

    @staticmethod
    def _complete(saga_log: list[dict], **details) -> None:
        saga_log[-1]["status"] = "COMPLETED"
        saga_log[-1].update(details)

    @staticmethod
    def _fail(saga_log: list[dict], error: str) -> None:
        saga_log[-1]["status"] = "FAILED"
        saga_log[-1]["error"] = error
