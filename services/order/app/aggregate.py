"""
Order Service: order aggregate

Status machine:
    PENDING_PAYMENT → PAID → PROCESSING → SHIPPED → DELIVERED
    PENDING_PAYMENT → CANCELLED
    PENDING_PAYMENT → PAYMENT_FAILED
    PAID → REFUNDED

The aggregate decides whether a change is allowed; commands.py persists
it under the version fence.
"""

from services.common.errors import Conflict, NoStatusChange, ValidationError
from services.common.security import Caller

from . import saga

PENDING_PAYMENT = "PENDING_PAYMENT"
PAID = "PAID"
PROCESSING = "PROCESSING"
SHIPPED = "SHIPPED"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"
REFUNDED = "REFUNDED"
PAYMENT_FAILED = "PAYMENT_FAILED"

ORDER_STATUSES = (
    PENDING_PAYMENT,
    PAID,
    PROCESSING,
    SHIPPED,
    DELIVERED,
    CANCELLED,
    REFUNDED,
    PAYMENT_FAILED,
)

TERMINAL_STATUSES = frozenset({DELIVERED, CANCELLED, REFUNDED})

# Where each payment outcome may land from
PAYMENT_CALLBACK_SOURCES = {
    PAID: frozenset({PENDING_PAYMENT}),
    PAYMENT_FAILED: frozenset({PENDING_PAYMENT}),
    REFUNDED: frozenset({PAID, PROCESSING, SHIPPED, DELIVERED}),
}

STATUS_TEXT = {
    PENDING_PAYMENT: "Onay Bekliyor",
    PAID: "Ödendi",
    PROCESSING: "Hazırlanıyor",
    SHIPPED: "Kargoya Verildi",
    DELIVERED: "Teslim Edildi",
    CANCELLED: "İptal Edildi",
    REFUNDED: "İade Edildi",
    PAYMENT_FAILED: "Ödeme Başarısız",
}


class OrderAggregate:
    def __init__(
        self,
        id: int,
        user_id: str,
        status: str,
        version: int,
        reservation_state: saga.ReservationState | None = None,
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.status = status
        self.version = version
        self.reservation_state = reservation_state

    @classmethod
    def from_row(cls, row) -> "OrderAggregate":
        return cls(
            id=row.id,
            user_id=row.user_id,
            status=row.status,
            version=row.version,
            reservation_state=saga.from_dict(row.reservation_state),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ── Decisions ────────────────────────────────

    def check_admin_status(self, status: str) -> None:
        """Admin/seller override: any enumerated status except the current one."""
        if status not in ORDER_STATUSES:
            raise ValidationError(
                f"Invalid status. Valid statuses: {', '.join(ORDER_STATUSES)}",
                data={"status": status},
            )
        if status == self.status:
            raise NoStatusChange("Order is already in this status", data={"status": status})

    def check_payment_status(self, status: str) -> bool:
        """
        Validate a payment-service callback. Returns False when the order
        already carries that status (a redelivered callback).
        """
        sources = PAYMENT_CALLBACK_SOURCES.get(status)
        if sources is None:
            raise ValidationError(
                f"Invalid payment status. Valid statuses: {', '.join(PAYMENT_CALLBACK_SOURCES)}",
                data={"status": status},
            )
        if status == self.status:
            return False
        if self.status not in sources:
            raise Conflict(
                f"Order in status {self.status} cannot move to {status}",
                data={"order_id": self.id, "status": self.status, "requested": status},
            )
        return True

    def check_cancel(self, caller: Caller) -> None:
        if self.status == CANCELLED:
            raise NoStatusChange("Order is already cancelled", data={"order_id": self.id})
        if not caller.is_admin and self.status != PENDING_PAYMENT:
            raise ValidationError(
                "Only orders awaiting payment can be cancelled",
                data={"order_id": self.id, "status": self.status},
            )

    def reservation_after_payment(self, status: str, transaction_id: str | None):
        """Reservation state implied by a payment outcome; unchanged if nothing is held."""
        if not isinstance(self.reservation_state, saga.Reserved):
            return self.reservation_state
        if status == PAID:
            return saga.advance(self.reservation_state, saga.Confirmed(transaction_id))
        if status == PAYMENT_FAILED:
            return saga.advance(self.reservation_state, saga.Released("Payment failed"))
        return self.reservation_state
