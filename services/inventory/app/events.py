"""
Inventory Service: event definitions

Published on the ``inventory_events`` channel after each ledger commit.
"""

from datetime import datetime

from pydantic import BaseModel


class StockInitialized(BaseModel):
    product_id: str
    quantity: int
    timestamp: datetime


class StockReserved(BaseModel):
    product_id: str
    order_id: str | None
    quantity: int
    available: int
    timestamp: datetime


class StockConfirmed(BaseModel):
    """The hold became a permanent decrement (payment succeeded)."""
    product_id: str
    order_id: str | None
    quantity: int
    remaining_quantity: int
    timestamp: datetime


class StockReleased(BaseModel):
    """The hold went back to the available pool (compensation)."""
    product_id: str
    order_id: str | None
    quantity: int
    reason: str | None
    available: int
    timestamp: datetime


class StockAdjusted(BaseModel):
    product_id: str
    operation: str
    previous_quantity: int
    new_quantity: int
    user_id: str | None
    timestamp: datetime
