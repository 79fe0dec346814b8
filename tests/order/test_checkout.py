"""
End-to-end checkout: the order saga talks to the real inventory, payment
and order apps in-process; cart and catalog are faked at the transport.
"""
import json

import httpx
import pytest

from services.common.security import Caller
from services.inventory.app import commands as inventory_commands
from services.inventory.app import main as inventory_main
from services.inventory.app import queries as inventory_queries
from services.order.app import commands as order_commands
from services.order.app import main as order_main
from services.payment.app import callbacks
from services.payment.app import main as payment_main
from services.payment.app.gateway import PaymentSimulator
from tests.helpers import ServiceRouter, asgi_client, catalog_response, user_headers


class FakeCart:
    def __init__(self) -> None:
        self.items: list[dict] = []

    def add(self, product_id: str, quantity: int, price: float) -> None:
        self.items.append(
            {"product_id": product_id, "name": product_id, "price": price, "quantity": quantity}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            self.items = []
            return httpx.Response(200, json={"success": True, "data": {"items": []}})
        return httpx.Response(200, json={"success": True, "data": {"items": self.items}})


class FakeCatalog:
    def __init__(self) -> None:
        self.products: dict[str, dict] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        product_id = request.url.path.rsplit("/", 1)[-1]
        if product_id not in self.products:
            return httpx.Response(404, json={"success": False, "error": "Product not found"})
        return httpx.Response(200, json=self.products[product_id])


@pytest.fixture
def cart():
    return FakeCart()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def router(session_factory, monkeypatch, cart, catalog):
    router = ServiceRouter(
        {
            "cart": httpx.MockTransport(cart.handler),
            "catalog": httpx.MockTransport(catalog.handler),
            "inventory": httpx.ASGITransport(app=inventory_main.app),
            "payment": httpx.ASGITransport(app=payment_main.app),
            "order": httpx.ASGITransport(app=order_main.app),
        }
    )
    for module in (order_main, inventory_main, payment_main):
        monkeypatch.setattr(module, "async_session", session_factory)
        monkeypatch.setattr(module, "redis_pool", None)

    monkeypatch.setattr(order_main, "CART_SERVICE_URL", "http://cart")
    monkeypatch.setattr(order_main, "PRODUCT_SERVICE_URL", "http://catalog")
    monkeypatch.setattr(order_main, "INVENTORY_SERVICE_URL", "http://inventory")
    monkeypatch.setattr(order_main, "PAYMENT_SERVICE_URL", "http://payment")
    monkeypatch.setattr(order_main, "outbound_transport", router)
    monkeypatch.setattr(
        payment_main,
        "notifier",
        callbacks.CallbackNotifier("http://inventory", "http://order", transport=router),
    )
    use_rate(monkeypatch, 100)
    return router


def use_rate(monkeypatch, rate):
    monkeypatch.setattr(
        payment_main, "gateway", PaymentSimulator(success_rate=rate, delay_min=0, delay_max=0)
    )


async def stock_up(session_factory, product_id, quantity):
    async with session_factory() as session:
        await inventory_commands.init_stock(session, None, product_id, quantity)


async def stock_of(session_factory, product_id):
    async with session_factory() as session:
        return await inventory_queries.get_stock(session, product_id)


async def checkout(**body):
    async with asgi_client(order_main.app) as client:
        return await client.post("/orders", json=body or None, headers=user_headers("42"))


async def fetch_order(order_id):
    async with asgi_client(order_main.app) as client:
        resp = await client.get(f"/orders/{order_id}", headers=user_headers("42"))
    return resp.json()["data"]


class TestSuccessfulCheckout:
    @pytest.mark.asyncio
    async def test_catalog_price_wins_over_cart_price(self, router, session_factory, cart, catalog):
        cart.add("p-1", 2, 100)
        catalog.products["p-1"] = catalog_response(120, 10, "Kettle", ["kettle.jpg"])
        await stock_up(session_factory, "p-1", 10)

        resp = await checkout(shippingAddress="Kadıköy, İstanbul")

        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["outcome"] == "COMPLETED"
        order = body["data"]["order"]
        assert order["total_price"] == 240.0
        assert order["shipping_address"] == "Kadıköy, İstanbul"
        [item] = order["items"]
        assert (item["price"], item["quantity"], item["subtotal"]) == (120.0, 2, 240.0)
        assert item["product_name"] == "Kettle"
        assert item["product_image"] == "kettle.jpg"

        [payment_call] = router.calls("POST", "/payments/process")
        assert json.loads(payment_call.content)["total_amount"] == "240.00"

    @pytest.mark.asyncio
    async def test_paid_order_confirms_stock_and_clears_cart(self, router, session_factory, cart, catalog):
        cart.add("p-1", 2, 120)
        catalog.products["p-1"] = catalog_response(120, 10)
        await stock_up(session_factory, "p-1", 10)

        resp = await checkout()

        order = await fetch_order(resp.json()["data"]["order"]["id"])
        assert order["status"] == "PAID"
        assert order["payment_transaction_id"].startswith("TXN-")
        assert order["reservation_state"]["tag"] == "CONFIRMED"
        stock = await stock_of(session_factory, "p-1")
        assert (stock["quantity"], stock["reserved_quantity"]) == (8, 0)
        assert cart.items == []
        actions = [step["action"] for step in resp.json()["data"]["saga_log"]]
        assert actions == [
            "FetchCart", "ValidateProducts", "CreateOrder",
            "ReserveInventory", "ProcessPayment", "ClearCart",
        ]


class TestDeclinedPayment:
    @pytest.mark.asyncio
    async def test_decline_fails_order_and_releases_stock(
        self, router, session_factory, monkeypatch, cart, catalog
    ):
        use_rate(monkeypatch, 0)
        cart.add("p-1", 3, 50)
        catalog.products["p-1"] = catalog_response(50, 10)
        await stock_up(session_factory, "p-1", 10)

        resp = await checkout()

        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is False
        assert body["data"]["outcome"] == "DECLINED"
        order = await fetch_order(body["data"]["order"]["id"])
        assert order["status"] == "PAYMENT_FAILED"
        assert order["reservation_state"]["tag"] == "RELEASED"
        stock = await stock_of(session_factory, "p-1")
        assert (stock["quantity"], stock["reserved_quantity"]) == (10, 0)
        assert router.calls("POST", "/inventory/confirm") == []


class TestCompensation:
    @pytest.mark.asyncio
    async def test_reserve_failure_releases_held_lines_and_cancels(
        self, router, session_factory, cart, catalog
    ):
        cart.add("p-1", 2, 10)
        cart.add("p-2", 2, 10)
        catalog.products["p-1"] = catalog_response(10, 10)
        catalog.products["p-2"] = catalog_response(10, 10)
        await stock_up(session_factory, "p-1", 10)
        await stock_up(session_factory, "p-2", 1)

        resp = await checkout()

        body = resp.json()
        assert body["data"]["outcome"] == "COMPENSATED"
        assert "p-2" in body["data"]["saga_log"][3]["error"]
        order = await fetch_order(body["data"]["order"]["id"])
        assert order["status"] == "CANCELLED"
        assert order["reservation_state"]["tag"] == "RELEASED"
        assert (await stock_of(session_factory, "p-1"))["reserved_quantity"] == 0
        assert router.calls("POST", "/payments/process") == []
        assert len(cart.items) == 2

    @pytest.mark.asyncio
    async def test_unreachable_payment_service(self, router, session_factory, cart, catalog):
        del router.routes["payment"]
        cart.add("p-1", 1, 10)
        catalog.products["p-1"] = catalog_response(10, 5)
        await stock_up(session_factory, "p-1", 5)

        resp = await checkout()

        body = resp.json()
        assert body["data"]["outcome"] == "COMPENSATED"
        order = await fetch_order(body["data"]["order"]["id"])
        assert order["status"] == "PAYMENT_FAILED"
        assert (await stock_of(session_factory, "p-1"))["reserved_quantity"] == 0

    @pytest.mark.asyncio
    async def test_order_cancelled_while_reserving(
        self, router, session_factory, monkeypatch, cart, catalog
    ):
        cart.add("p-1", 2, 10)
        catalog.products["p-1"] = catalog_response(10, 10)
        await stock_up(session_factory, "p-1", 10)
        record_reservation = order_commands.record_reservation

        async def cancel_first(session, order_id, state):
            async with session_factory() as other:
                await order_commands.cancel_order(other, None, order_id, Caller("42"))
            return await record_reservation(session, order_id, state)

        monkeypatch.setattr(order_commands, "record_reservation", cancel_first)

        resp = await checkout()

        body = resp.json()
        assert body["data"]["outcome"] == "COMPENSATED"
        assert body["data"]["saga_log"][3]["status"] == "FAILED"
        assert body["data"]["saga_log"][4]["action"] == "ReleaseInventory (COMPENSATING)"
        order = await fetch_order(body["data"]["order"]["id"])
        assert order["status"] == "CANCELLED"
        assert (await stock_of(session_factory, "p-1"))["reserved_quantity"] == 0
        assert router.calls("POST", "/payments/process") == []


class TestRejectedBeforeOrder:
    @pytest.mark.asyncio
    async def test_empty_cart(self, router):
        resp = await checkout()

        assert resp.status_code == 400
        assert resp.json()["code"] == "EMPTY_CART"

    @pytest.mark.asyncio
    async def test_unknown_product(self, router, cart):
        cart.add("ghost", 1, 10)

        resp = await checkout()

        assert resp.status_code == 404
        assert resp.json()["code"] == "PRODUCT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_catalog_stock_too_low(self, router, session_factory, cart, catalog):
        cart.add("p-1", 5, 10)
        catalog.products["p-1"] = catalog_response(10, 2)

        resp = await checkout()

        assert resp.status_code == 400
        assert resp.json()["data"]["available_stock"] == 2
        async with asgi_client(order_main.app) as client:
            mine = await client.get("/orders/my-orders", headers=user_headers("42"))
        assert mine.json()["count"] == 0

    @pytest.mark.asyncio
    async def test_cart_unreachable(self, router):
        del router.routes["cart"]

        resp = await checkout()

        assert resp.status_code == 503
        assert resp.json()["code"] == "UPSTREAM_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_requires_user(self, router):
        async with asgi_client(order_main.app) as client:
            resp = await client.post("/orders")

        assert resp.status_code == 401
