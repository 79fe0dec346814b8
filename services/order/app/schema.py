"""
Order Service: table definitions
"""

from sqlalchemy import (
    JSON,
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

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("total_price", Numeric(12, 2), nullable=False),
    Column("status", String(32), nullable=False),
    Column("shipping_address", Text),
    Column("billing_address", Text),
    Column("notes", Text),
    Column("payment_transaction_id", String(64)),
    # Tagged checkout reservation state, see saga.py
    Column("reservation_state", JSON),
    # Fencing counter: every status write is conditioned on it
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String(64), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("product_image", Text),
    Column("price", Numeric(12, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("subtotal", Numeric(12, 2), nullable=False),
)

order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("old_status", String(32)),
    Column("new_status", String(32), nullable=False),
    Column("changed_by", String(64)),
    Column("notes", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
