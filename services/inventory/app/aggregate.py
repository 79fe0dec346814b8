"""
Inventory Service: stock aggregate rebuilt from the transaction log

The ``stocks`` row is the authoritative counter, but every change is also
recorded in ``stock_transactions``. Folding the log from the INIT entry
must land on the same figures as the stored row; ``replay`` in queries.py
uses this to audit a product's ledger.

available = quantity - reserved
"""

from .schema import TX_ADD, TX_CONFIRM, TX_INIT, TX_RELEASE, TX_REMOVE, TX_RESERVE


class StockAggregate:
    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        self.quantity: int = 0
        self.reserved: int = 0
        self.initial_quantity: int = 0
        self.confirmed_total: int = 0
        self.adjusted_total: int = 0
        self.chain_breaks: list[int] = []
        self.version: int = 0

    @property
    def available(self) -> int:
        return self.quantity - self.reserved

    # ── per-type application ─────────────────────

    def apply_init(self, tx: dict) -> None:
        self.quantity += tx["quantity_change"]
        self.initial_quantity = self.quantity

    def apply_reserve(self, tx: dict) -> None:
        self.reserved += tx["quantity_change"]

    def apply_confirm(self, tx: dict) -> None:
        # quantity_change is negative: stock leaves and the hold is dropped together
        self.quantity += tx["quantity_change"]
        self.reserved += tx["quantity_change"]
        self.confirmed_total += tx["quantity_change"]

    def apply_release(self, tx: dict) -> None:
        self.reserved -= tx["quantity_change"]

    def apply_adjust(self, tx: dict) -> None:
        self.quantity += tx["quantity_change"]
        self.adjusted_total += tx["quantity_change"]

    def apply_transaction(self, tx: dict) -> None:
        if self.version and (
            tx["previous_quantity"] != self.quantity
            or tx["previous_reserved"] != self.reserved
        ):
            self.chain_breaks.append(tx["id"])
        handler = {
            TX_INIT: self.apply_init,
            TX_RESERVE: self.apply_reserve,
            TX_CONFIRM: self.apply_confirm,
            TX_RELEASE: self.apply_release,
            TX_ADD: self.apply_adjust,
            TX_REMOVE: self.apply_adjust,
        }.get(tx["transaction_type"])
        if handler:
            handler(tx)
        self.version += 1

    @classmethod
    def from_transactions(cls, product_id: str, transactions: list[dict]) -> "StockAggregate":
        agg = cls(product_id)
        for tx in transactions:
            agg.apply_transaction(tx)
        return agg

    def matches(self, quantity: int, reserved: int) -> bool:
        return self.quantity == quantity and self.reserved == reserved and not self.chain_breaks
