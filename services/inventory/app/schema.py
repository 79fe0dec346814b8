"""
Inventory Service: table definitions

Database per service: only the inventory service reads or writes these.
The CHECK constraints are the last line of defence for the stock invariant
``0 <= reserved_quantity <= quantity``.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

TX_INIT = "INIT"
TX_RESERVE = "RESERVE"
TX_CONFIRM = "CONFIRM"
TX_RELEASE = "RELEASE"
TX_ADD = "ADD"
TX_REMOVE = "REMOVE"
TRANSACTION_TYPES = (TX_INIT, TX_RESERVE, TX_CONFIRM, TX_RELEASE, TX_ADD, TX_REMOVE)

RESERVATION_RESERVED = "RESERVED"
RESERVATION_CONFIRMED = "CONFIRMED"
RESERVATION_RELEASED = "RELEASED"

stocks = Table(
    "stocks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", String(64), nullable=False, unique=True),
    Column("quantity", Integer, nullable=False, default=0),
    Column("reserved_quantity", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity >= 0", name="ck_stocks_quantity_non_negative"),
    CheckConstraint("reserved_quantity >= 0", name="ck_stocks_reserved_non_negative"),
    CheckConstraint("reserved_quantity <= quantity", name="ck_stocks_reserved_within_quantity"),
)

stock_transactions = Table(
    "stock_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", String(64), nullable=False),
    Column("transaction_type", String(16), nullable=False),
    Column("quantity_change", Integer, nullable=False),
    Column("previous_quantity", Integer, nullable=False),
    Column("previous_reserved", Integer, nullable=False),
    Column("new_quantity", Integer, nullable=False),
    Column("new_reserved", Integer, nullable=False),
    Column("order_id", String(64)),
    Column("user_id", String(64)),
    Column("notes", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_stock_transactions_product", "product_id", "id"),
)

# One row per (order, product): lets confirm/release recognise a replayed call.
stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(64), nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "product_id", name="uq_stock_reservations_order_product"),
    CheckConstraint("quantity >= 0", name="ck_stock_reservations_quantity"),
)
