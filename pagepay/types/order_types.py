from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> Optional["OrderStatus"]:
        try:
            return cls(value)
        except ValueError:
            return None


VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.FAILED: frozenset({OrderStatus.PENDING, OrderStatus.CANCELLED}),
    OrderStatus.CANCELLED: frozenset(),
}

# Gateway trade_status -> target order status. None keeps the order as it is.
TRADE_STATUS_TARGETS: Dict[str, Optional[OrderStatus]] = {
    "TRADE_SUCCESS": OrderStatus.PAID,
    "TRADE_FINISHED": OrderStatus.PAID,
    "TRADE_CLOSED": OrderStatus.FAILED,
    "WAIT_BUYER_PAY": None,
}


@dataclass
class VerificationResult:
    valid: bool
    reason: Optional[str] = None


@dataclass
class CallbackResult:
    success: bool
    message: str = ""
    order: Optional[Any] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "order": self.order.to_dict() if self.order is not None else None,
        }


@dataclass
class PaymentUrlResult:
    order: Any
    payment_url: str


@dataclass
class OrderStats:
    total: int = 0
    counts: Dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in OrderStatus})
    total_amount_cents: int = 0
    paid_amount_cents: int = 0

    def to_dict(self) -> dict:
        from pagepay.models.order import format_amount

        return {
            "total": self.total,
            **self.counts,
            "total_amount": format_amount(self.total_amount_cents),
            "paid_amount": format_amount(self.paid_amount_cents),
        }
