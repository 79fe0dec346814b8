"""Order HTTP surface: queries, admin status changes, cancellation, payment callbacks."""
from decimal import Decimal

import pytest

from services.order.app import commands, main
from tests.helpers import asgi_client, internal_headers, user_headers

LINE = {
    "product_id": "p-1",
    "product_name": "Kettle",
    "price": Decimal("99.90"),
    "quantity": 1,
    "subtotal": Decimal("99.90"),
}


@pytest.fixture
def app(session_factory, monkeypatch):
    monkeypatch.setattr(main, "async_session", session_factory)
    monkeypatch.setattr(main, "redis_pool", None)
    return main.app


async def place(session_factory, user_id="42"):
    async with session_factory() as session:
        return await commands.create_order(session, None, user_id, [LINE], Decimal("99.90"))


class TestQueries:
    @pytest.mark.asyncio
    async def test_my_orders_carries_status_text(self, app, session_factory):
        await place(session_factory)
        await place(session_factory, user_id="7")

        async with asgi_client(app) as client:
            resp = await client.get("/orders/my-orders", headers=user_headers("42"))

        body = resp.json()
        assert body["count"] == 1
        assert body["data"][0]["status_text"] == "Onay Bekliyor"
        assert body["data"][0]["formatted_total"] == "₺99,90"

    @pytest.mark.asyncio
    async def test_paginated_listing(self, app, session_factory):
        for _ in range(3):
            await place(session_factory)

        async with asgi_client(app) as client:
            resp = await client.get("/orders", params={"page": 2, "limit": 2}, headers=user_headers("42"))

        body = resp.json()
        assert len(body["data"]) == 1
        assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}

    @pytest.mark.asyncio
    async def test_other_users_order_is_hidden(self, app, session_factory):
        order_id = await place(session_factory)

        async with asgi_client(app) as client:
            stranger = await client.get(f"/orders/{order_id}", headers=user_headers("7"))
            admin = await client.get(f"/orders/{order_id}", headers=user_headers("1", "admin"))

        assert stranger.status_code == 404
        assert admin.status_code == 200
        assert admin.json()["data"]["status_history"][0]["notes"] == "Order created"

    @pytest.mark.asyncio
    async def test_admin_listing(self, app, session_factory):
        await place(session_factory)
        await place(session_factory, user_id="7")

        async with asgi_client(app) as client:
            customer = await client.get("/orders/admin/all", headers=user_headers("42"))
            seller = await client.get(
                "/orders/admin/all", params={"user_id": "7"}, headers=user_headers("3", "seller")
            )

        assert customer.status_code == 403
        [order] = seller.json()["data"]
        assert order["user_id"] == "7"
        assert order["item_count"] == 1


class TestStatusChanges:
    @pytest.mark.asyncio
    async def test_admin_moves_order_along(self, app, session_factory):
        order_id = await place(session_factory)

        async with asgi_client(app) as client:
            resp = await client.put(
                f"/orders/{order_id}/status",
                json={"status": "PROCESSING", "notes": "Packing"},
                headers=user_headers("1", "admin"),
            )
            again = await client.put(
                f"/orders/{order_id}/status",
                json={"status": "PROCESSING"},
                headers=user_headers("1", "admin"),
            )
            stale = await client.put(
                f"/orders/{order_id}/status",
                json={"status": "SHIPPED", "expectedVersion": 1},
                headers=user_headers("1", "admin"),
            )

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "PROCESSING"
        assert again.status_code == 400
        assert again.json()["code"] == "NO_STATUS_CHANGE"
        assert stale.status_code == 409

    @pytest.mark.asyncio
    async def test_customer_cannot_set_status(self, app, session_factory):
        order_id = await place(session_factory)

        async with asgi_client(app) as client:
            resp = await client.put(
                f"/orders/{order_id}/status", json={"status": "SHIPPED"}, headers=user_headers("42")
            )

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_payment_callback(self, app, session_factory):
        order_id = await place(session_factory)
        body = {"status": "PAID", "transaction_id": "TXN-9", "payment_id": 3}

        async with asgi_client(app) as client:
            anonymous = await client.put(f"/orders/{order_id}/payment-status", json=body)
            first = await client.put(
                f"/orders/{order_id}/payment-status", json=body, headers=internal_headers()
            )
            repeat = await client.put(
                f"/orders/{order_id}/payment-status", json=body, headers=internal_headers()
            )

        assert anonymous.status_code == 401
        assert first.json()["data"]["changed"] is True
        assert repeat.status_code == 200
        assert repeat.json()["message"] == "Payment status already recorded"

    @pytest.mark.asyncio
    async def test_cancel_then_late_payment(self, app, session_factory):
        order_id = await place(session_factory)

        async with asgi_client(app) as client:
            cancelled = await client.delete(f"/orders/{order_id}", headers=user_headers("42"))
            late = await client.put(
                f"/orders/{order_id}/payment-status",
                json={"status": "PAID", "transaction_id": "TXN-9"},
                headers=internal_headers(),
            )
            order = await client.get(f"/orders/{order_id}", headers=user_headers("42"))

        assert cancelled.status_code == 200
        assert late.status_code == 409
        assert order.json()["data"]["status"] == "CANCELLED"
        assert order.json()["data"]["payment_transaction_id"] is None
