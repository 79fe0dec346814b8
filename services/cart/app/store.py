"""
Cart Service: Redis cart store

One JSON list per user under ``cart:user_<id>``, rewritten whole on every
change and given a fresh TTL each time. Changes are optimistic
WATCH/MULTI transactions, so two concurrent writers never drop a line.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Callable

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from services.common.errors import Conflict, InsufficientStock, NotFound, ValidationError
from services.common.money import format_try, to_money

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 604800
MAX_UPDATE_ATTEMPTS = 5


def cart_key(user_id: str) -> str:
    return f"cart:user_{user_id}"


def _quantity_of(items: list[dict], product_id: str) -> int:
    return next((i["quantity"] for i in items if i["product_id"] == product_id), 0)


def summarize(items: list[dict]) -> dict:
    total = sum((to_money(item["price"]) * item["quantity"] for item in items), to_money(0))
    return {
        "items": items,
        "item_count": sum(item["quantity"] for item in items),
        "total": float(total),
        "formatted_total": format_try(total),
    }


class CartStore:
    def __init__(self, redis: aioredis.Redis, ttl: int = DEFAULT_TTL_SECONDS) -> None:
        self.redis = redis
        self.ttl = ttl

    async def load(self, user_id: str) -> list[dict]:
        raw = await self.redis.get(cart_key(user_id))
        return json.loads(raw) if raw else []

    async def _update(self, user_id: str, mutate: Callable[[list[dict]], list[dict]]) -> list[dict]:
        """
        Read-modify-write of one cart under WATCH/MULTI/EXEC.

        ``mutate`` receives the current lines and returns the new list (it
        may raise to abort). If another client writes the cart between the
        read and EXEC, the whole cycle runs again on fresh data.
        """
        key = cart_key(user_id)
        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                items = mutate(json.loads(raw) if raw else [])
                pipe.multi()
                if items:
                    pipe.set(key, json.dumps(items), ex=self.ttl)
                else:
                    pipe.delete(key)
                try:
                    await pipe.execute()
                except WatchError:
                    logger.info("Cart %s changed during update, retrying (attempt %d)", user_id, attempt)
                    continue
            return items
        logger.warning("Cart %s update gave up after %d attempts", user_id, MAX_UPDATE_ATTEMPTS)
        raise Conflict("Cart was modified concurrently, please try again", data={"user_id": user_id})

    async def add(self, user_id: str, product_id: str, quantity: int, product: dict) -> list[dict]:
        """Add ``quantity`` of a catalog-validated product, merging with an existing line."""
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        stock = int(product.get("stock", 0))
        price = float(to_money(product["price"]))

        def merge(items: list[dict]) -> list[dict]:
            line = next((i for i in items if i["product_id"] == product_id), None)
            new_quantity = quantity + (line["quantity"] if line else 0)
            if new_quantity > stock:
                raise InsufficientStock(
                    f"Insufficient stock. Available: {stock}",
                    data={"product_id": product_id, "requested_quantity": new_quantity, "available_stock": stock},
                )
            if line:
                line["quantity"] = new_quantity
                line["price"] = price
            else:
                images = product.get("images") or []
                items.append(
                    {
                        "product_id": product_id,
                        "name": product.get("name"),
                        "price": price,
                        "image": images[0] if images else None,
                        "quantity": new_quantity,
                        "added_at": datetime.now(timezone.utc).isoformat(),
                    }
                )
            return items

        items = await self._update(user_id, merge)
        logger.info("Cart %s: %s now x%d", user_id, product_id, _quantity_of(items, product_id))
        return items

    async def set_quantity(self, user_id: str, product_id: str, quantity: int) -> list[dict]:
        """Set a line's quantity; 0 removes the line."""
        if quantity < 0:
            raise ValidationError("quantity must not be negative")
        if quantity == 0:
            return await self.remove(user_id, product_id)

        def change(items: list[dict]) -> list[dict]:
            line = next((i for i in items if i["product_id"] == product_id), None)
            if line is None:
                raise NotFound("Product is not in the cart", data={"product_id": product_id})
            line["quantity"] = quantity
            return items

        return await self._update(user_id, change)

    async def remove(self, user_id: str, product_id: str) -> list[dict]:
        def drop(items: list[dict]) -> list[dict]:
            remaining = [i for i in items if i["product_id"] != product_id]
            if len(remaining) == len(items):
                raise NotFound("Product is not in the cart", data={"product_id": product_id})
            return remaining

        return await self._update(user_id, drop)

    async def clear(self, user_id: str) -> None:
        await self.redis.delete(cart_key(user_id))
        logger.info("Cart %s cleared", user_id)
