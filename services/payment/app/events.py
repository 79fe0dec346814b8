"""
Payment Service: event definitions

Published on the ``payment_events`` channel.
"""

from datetime import datetime

from pydantic import BaseModel


class PaymentSucceeded(BaseModel):
    payment_id: int
    transaction_id: str
    order_id: str
    amount: float
    timestamp: datetime


class PaymentFailed(BaseModel):
    payment_id: int
    transaction_id: str
    order_id: str
    amount: float
    error_code: str
    timestamp: datetime


class PaymentRefunded(BaseModel):
    payment_id: int
    refund_transaction_id: str
    order_id: str
    amount: float
    reason: str
    timestamp: datetime
