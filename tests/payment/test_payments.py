"""Payment simulator: decisions, persistence and refunds."""
import json
import random
from decimal import Decimal

import pytest
from sqlalchemy import select

from services.common.errors import NotFound, PaymentNotRefundable, ValidationError
from services.payment.app import commands, queries
from services.payment.app.gateway import PaymentSimulator
from services.payment.app.schema import refunds

ITEMS = [{"product_id": "p-1", "quantity": 2}, {"product_id": "p-2", "quantity": 1}]


def gateway(rate: float) -> PaymentSimulator:
    return PaymentSimulator(success_rate=rate, delay_min=0, delay_max=0, rng=random.Random(7))


async def _process(session_factory, rate, redis=None, amount="240.00", items=ITEMS):
    async with session_factory() as session:
        return await commands.process_payment(
            session, redis, gateway(rate), "1", Decimal(amount), "42", items
        )


class TestGateway:
    @pytest.mark.asyncio
    async def test_rate_bounds(self):
        always = PaymentSimulator(success_rate=100, delay_min=0, delay_max=0)
        never = PaymentSimulator(success_rate=0, delay_min=0, delay_max=0)

        assert all([(await always.authorize(Decimal("1"))).approved for _ in range(50)])
        assert not any([(await never.authorize(Decimal("1"))).approved for _ in range(50)])

    def test_rate_is_clamped(self):
        assert PaymentSimulator(success_rate=150).success_rate == 100.0
        assert PaymentSimulator(success_rate=-3).success_rate == 0.0


class TestProcessPayment:
    @pytest.mark.asyncio
    async def test_success_is_recorded(self, session_factory, redis):
        payment = await _process(session_factory, 100, redis)

        assert payment["status"] == "SUCCESS"
        assert payment["transaction_id"].startswith("TXN-")
        assert payment["amount"] == 240.0
        assert payment["items"] == ITEMS
        assert payment["inventory_callback_sent"] is False
        event = json.loads(redis.publish.await_args.args[1])
        assert event["event_type"] == "PaymentSucceeded"

    @pytest.mark.asyncio
    async def test_decline_is_recorded_with_error(self, session_factory):
        payment = await _process(session_factory, 0)

        assert payment["status"] == "FAILED"
        assert payment["error_code"] == "PAYMENT_DECLINED"
        assert payment["error_message"]

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, session_factory):
        with pytest.raises(ValidationError) as exc_info:
            await _process(session_factory, 100, amount="0")
        assert exc_info.value.data["transaction_id"].startswith("TXN-")

    @pytest.mark.asyncio
    async def test_lookup_by_id_or_transaction(self, session_factory):
        payment = await _process(session_factory, 100)

        async with session_factory() as session:
            by_id = await queries.get_payment(session, str(payment["payment_id"]))
            by_txn = await queries.get_payment(session, payment["transaction_id"])
            for_order = await queries.list_for_order(session, "1")

        assert by_id["transaction_id"] == payment["transaction_id"]
        assert by_txn["payment_id"] == payment["payment_id"]
        assert [p["payment_id"] for p in for_order] == [payment["payment_id"]]


class TestRefund:
    @pytest.mark.asyncio
    async def test_full_refund(self, session_factory):
        payment = await _process(session_factory, 100)

        async with session_factory() as session:
            refund = await commands.refund_payment(session, None, payment["payment_id"])

        assert refund["refund_transaction_id"].startswith("REF-")
        assert refund["amount"] == 240.0
        assert refund["reason"] == "Customer request"
        async with session_factory() as session:
            after = await queries.get_payment(session, str(payment["payment_id"]))
        assert after["status"] == "REFUNDED"

    @pytest.mark.asyncio
    async def test_failed_payment_cannot_be_refunded(self, session_factory):
        payment = await _process(session_factory, 0)

        async with session_factory() as session:
            with pytest.raises(PaymentNotRefundable):
                await commands.refund_payment(session, None, payment["payment_id"])

        async with session_factory() as session:
            after = await queries.get_payment(session, str(payment["payment_id"]))
            refund_rows = (await session.execute(select(refunds))).fetchall()
        assert after["status"] == "FAILED"
        assert refund_rows == []

    @pytest.mark.asyncio
    async def test_refund_cannot_exceed_amount(self, session_factory):
        payment = await _process(session_factory, 100, amount="10.00")

        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await commands.refund_payment(session, None, payment["payment_id"], Decimal("10.01"))

    @pytest.mark.asyncio
    async def test_unknown_payment(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(NotFound):
                await commands.refund_payment(session, None, 999)
