"""
Cart Service: FastAPI entrypoint

Per-user shopping cart kept in Redis. Products are checked against the
catalog when added; checkout re-validates them anyway.
"""

import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI

from services.common.catalog import fetch_product
from services.common.config import env_float, env_int
from services.common.errors import install_error_handlers
from services.common.http import make_client
from services.common.logging_config import setup_logging
from services.common.models import ApiModel, ok
from services.common.security import Caller, require_user

from .store import DEFAULT_TTL_SECONDS, CartStore, summarize

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
PRODUCT_SERVICE_URL = os.environ.get("PRODUCT_SERVICE_URL", "http://localhost:3006")
CART_TTL_SECONDS = env_int("CART_TTL_SECONDS", DEFAULT_TTL_SECONDS)
HTTP_TIMEOUT_SECONDS = env_float("HTTP_TIMEOUT_SECONDS", 10.0)

redis_pool: aioredis.Redis | None = None
# Outbound transport override; None means real network calls
outbound_transport: httpx.AsyncBaseTransport | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    setup_logging("cart-service")
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()


app = FastAPI(title="Cart Service", lifespan=lifespan)
install_error_handlers(app)


def get_store() -> CartStore:
    return CartStore(redis_pool, CART_TTL_SECONDS)


# ── Request Models ───────────────────────────────


class AddItemRequest(ApiModel):
    product_id: str
    quantity: int = 1


class UpdateItemRequest(ApiModel):
    quantity: int


# ── Endpoints ────────────────────────────────────


@app.get("/cart")
async def get_cart(caller: Caller = Depends(require_user), store: CartStore = Depends(get_store)):
    return ok(summarize(await store.load(caller.user_id)))


@app.post("/cart/add")
async def add_item(
    req: AddItemRequest,
    caller: Caller = Depends(require_user),
    store: CartStore = Depends(get_store),
):
    async with make_client(HTTP_TIMEOUT_SECONDS, outbound_transport) as client:
        product = await fetch_product(client, PRODUCT_SERVICE_URL, req.product_id)
    items = await store.add(caller.user_id, req.product_id, req.quantity, product)
    return ok(summarize(items), "Product added to your cart")


@app.put("/cart/items/{product_id}")
async def update_item(
    product_id: str,
    req: UpdateItemRequest,
    caller: Caller = Depends(require_user),
    store: CartStore = Depends(get_store),
):
    items = await store.set_quantity(caller.user_id, product_id, req.quantity)
    return ok(summarize(items), "Cart updated")


@app.delete("/cart/items/{product_id}")
async def remove_item(
    product_id: str,
    caller: Caller = Depends(require_user),
    store: CartStore = Depends(get_store),
):
    items = await store.remove(caller.user_id, product_id)
    return ok(summarize(items), "Product removed from your cart")


@app.delete("/cart")
async def clear_cart(caller: Caller = Depends(require_user), store: CartStore = Depends(get_store)):
    await store.clear(caller.user_id)
    return ok(message="Cart cleared")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "cart-service"}
