"""Callback delivery, delivery flags and the reconciliation sweep."""
import json
import random
from decimal import Decimal

import httpx
import pytest

from services.payment.app import callbacks, commands, queries
from services.payment.app.gateway import PaymentSimulator

ITEMS = [{"product_id": "p-1", "quantity": 2}, {"product_id": "p-2", "quantity": 1}]


class Downstream:
    """Records callback requests; either service can be switched off."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.inventory_up = True
        self.order_up = True

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "inventory" and not self.inventory_up:
            return httpx.Response(503, json={"success": False, "error": "down"})
        if request.url.host == "order" and not self.order_up:
            return httpx.Response(503, json={"success": False, "error": "down"})
        return httpx.Response(200, json={"success": True, "data": {}})

    def calls(self, path_prefix: str) -> list[dict]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.startswith(path_prefix)
        ]


@pytest.fixture
def downstream():
    return Downstream()


@pytest.fixture
def notifier(downstream):
    return callbacks.CallbackNotifier(
        "http://inventory", "http://order", transport=httpx.MockTransport(downstream.handler)
    )


async def _payment(session_factory, rate, items=ITEMS):
    async with session_factory() as session:
        return await commands.process_payment(
            session, None,
            PaymentSimulator(success_rate=rate, delay_min=0, delay_max=0, rng=random.Random(1)),
            "17", Decimal("99.90"), "42", items,
        )


async def _reload(session_factory, payment):
    async with session_factory() as session:
        return await queries.get_payment(session, str(payment["payment_id"]))


class TestDeliverCallbacks:
    @pytest.mark.asyncio
    async def test_success_confirms_each_line_and_marks_order_paid(
        self, session_factory, notifier, downstream
    ):
        payment = await _payment(session_factory, 100)

        result = await callbacks.deliver_callbacks(session_factory, notifier, payment)

        assert result["inventory_callback_sent"] is True
        assert result["order_callback_sent"] is True
        confirms = downstream.calls("/inventory/confirm")
        assert [(c["product_id"], c["quantity"]) for c in confirms] == [("p-1", 2), ("p-2", 1)]
        assert all(c["order_id"] == "17" for c in confirms)
        [order_call] = downstream.calls("/orders/17/payment-status")
        assert order_call["status"] == "PAID"
        assert order_call["transaction_id"] == payment["transaction_id"]

        stored = await _reload(session_factory, payment)
        assert stored["inventory_callback_sent"] is True
        assert stored["order_callback_sent"] is True

    @pytest.mark.asyncio
    async def test_decline_releases_and_reports_failure(self, session_factory, notifier, downstream):
        payment = await _payment(session_factory, 0)

        await callbacks.deliver_callbacks(session_factory, notifier, payment)

        releases = downstream.calls("/inventory/release")
        assert len(releases) == 2
        assert "Payment failed" in releases[0]["reason"]
        assert downstream.calls("/inventory/confirm") == []
        [order_call] = downstream.calls("/orders/17/payment-status")
        assert order_call["status"] == "PAYMENT_FAILED"

    @pytest.mark.asyncio
    async def test_undelivered_callback_leaves_flag_unset(self, session_factory, notifier, downstream):
        downstream.inventory_up = False
        payment = await _payment(session_factory, 100)

        result = await callbacks.deliver_callbacks(session_factory, notifier, payment)

        assert result["inventory_callback_sent"] is False
        assert result["order_callback_sent"] is True
        stored = await _reload(session_factory, payment)
        assert stored["inventory_callback_sent"] is False
        assert stored["status"] == "SUCCESS"

    @pytest.mark.asyncio
    async def test_no_items_means_nothing_owed_to_inventory(self, session_factory, notifier, downstream):
        payment = await _payment(session_factory, 100, items=[])

        result = await callbacks.deliver_callbacks(session_factory, notifier, payment)

        assert result["inventory_callback_sent"] is True
        assert downstream.calls("/inventory") == []


class TestRedeliverPending:
    @pytest.mark.asyncio
    async def test_retries_only_missing_callbacks(self, session_factory, notifier, downstream):
        downstream.inventory_up = False
        payment = await _payment(session_factory, 100)
        await callbacks.deliver_callbacks(session_factory, notifier, payment)
        downstream.requests.clear()
        downstream.inventory_up = True

        results = await callbacks.redeliver_pending(session_factory, notifier)

        assert results == [
            {
                "payment_id": payment["payment_id"],
                "inventory_callback_sent": True,
                "order_callback_sent": True,
            }
        ]
        assert len(downstream.calls("/inventory/confirm")) == 2
        assert downstream.calls("/orders") == []

        async with session_factory() as session:
            assert await queries.pending_callbacks(session) == []


async def _refund(session_factory, payment):
    async with session_factory() as session:
        await commands.refund_payment(session, None, payment["payment_id"])
    return await _reload(session_factory, payment)


class TestRefundDelivery:
    @pytest.mark.asyncio
    async def test_order_hears_paid_before_refunded(self, session_factory, notifier, downstream):
        downstream.order_up = False
        payment = await _payment(session_factory, 100)
        await callbacks.deliver_callbacks(session_factory, notifier, payment)
        await _refund(session_factory, payment)
        downstream.requests.clear()
        downstream.order_up = True

        [result] = await callbacks.redeliver_pending(session_factory, notifier)

        assert result["order_callback_sent"] is True
        assert result["refund_callback_sent"] is True
        assert [c["status"] for c in downstream.calls("/orders/17/payment-status")] == ["PAID", "REFUNDED"]
        assert downstream.calls("/inventory/release") == []
        async with session_factory() as session:
            assert await queries.pending_callbacks(session) == []

    @pytest.mark.asyncio
    async def test_undelivered_refund_notice_is_retried(self, session_factory, notifier, downstream):
        payment = await _payment(session_factory, 100)
        await callbacks.deliver_callbacks(session_factory, notifier, payment)
        refunded = await _refund(session_factory, payment)
        downstream.requests.clear()
        downstream.order_up = False

        result = await callbacks.deliver_callbacks(session_factory, notifier, refunded)

        assert result["refund_callback_sent"] is False
        stored = await _reload(session_factory, payment)
        assert stored["refund_callback_sent"] is False
        async with session_factory() as session:
            assert [p["payment_id"] for p in await queries.pending_callbacks(session)] == [payment["payment_id"]]

        downstream.requests.clear()
        downstream.order_up = True
        await callbacks.redeliver_pending(session_factory, notifier)

        assert [c["status"] for c in downstream.calls("/orders/17/payment-status")] == ["REFUNDED"]
        assert downstream.calls("/inventory") == []
        assert (await _reload(session_factory, payment))["refund_callback_sent"] is True
