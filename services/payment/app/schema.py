"""
Payment Service: table definitions
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

metadata = MetaData()

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"
STATUS_REFUNDED = "REFUNDED"

DECLINED_CODE = "PAYMENT_DECLINED"
DECLINED_MESSAGE = "Payment was declined. Please check your card details."

payments = Table(
    "payments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("transaction_id", String(64), nullable=False, unique=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("user_id", String(64), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False, default="TRY"),
    Column("status", String(16), nullable=False),
    Column("card_last_four", String(4)),
    Column("error_code", String(64)),
    Column("error_message", Text),
    Column("items", JSON),
    Column("inventory_callback_sent", Boolean, nullable=False, default=False),
    Column("order_callback_sent", Boolean, nullable=False, default=False),
    Column("refund_callback_sent", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("amount > 0", name="ck_payments_positive_amount"),
    CheckConstraint(
        "status IN ('SUCCESS', 'FAILED', 'REFUNDED')",
        name="ck_payments_valid_status",
    ),
)

refunds = Table(
    "refunds",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("payment_id", Integer, ForeignKey("payments.id"), nullable=False),
    Column("refund_transaction_id", String(64), nullable=False, unique=True),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("status", String(16), nullable=False),
    Column("reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
