"""
Order Service: event definitions

Published on the ``order_events`` channel after the owning transaction
commits. Named in the past tense.
"""

from datetime import datetime

from pydantic import BaseModel


class OrderCreated(BaseModel):
    order_id: int
    user_id: str
    total_price: float
    item_count: int
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    order_id: int
    old_status: str | None
    new_status: str
    changed_by: str | None
    version: int
    timestamp: datetime


class CheckoutFinished(BaseModel):
    """The checkout saga ran to an outcome (completed, declined or compensated)."""
    order_id: int
    outcome: str
    saga_log: list[dict]
    timestamp: datetime
