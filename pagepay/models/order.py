import copy
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from pagepay.errors import InvalidTransitionError, UnknownStatusError, ValidationError
from pagepay.types.order_types import VALID_TRANSITIONS, OrderStatus

OUT_TRADE_NO_PATTERN = re.compile(r"^[A-Za-z0-9_]{6,64}$")
SUBJECT_MAX_LENGTH = 256
BODY_MAX_LENGTH = 400

AMOUNT_REQUIRED = "totalAmount is required and must be a positive number"
AMOUNT_PRECISION = "totalAmount can have at most 2 decimal places (max 2 decimal places)"
AMOUNT_RANGE = "totalAmount must be between 0.01 and 100000 (out of range)"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_amount(value: Any) -> Tuple[Optional[int], List[str]]:
    """Convert a boundary amount to integer cents.

    Returns ``(cents, violations)``; ``cents`` is None whenever a rule is broken.
    Floats go through ``str`` first so ``99.99`` stays ``99.99``.
    """
    if value is None or isinstance(value, bool):
        return None, [AMOUNT_REQUIRED]
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None, [AMOUNT_REQUIRED]
    if not amount.is_finite() or amount <= 0:
        return None, [AMOUNT_REQUIRED]

    violations = []
    cents = amount * 100
    if cents != cents.to_integral_value():
        violations.append(AMOUNT_PRECISION)
    if amount < Decimal("0.01") or amount > Decimal("100000"):
        violations.append(AMOUNT_RANGE)
    if violations:
        return None, violations
    return int(cents), []


def format_amount(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"


def validate_order_fields(
    out_trade_no: Any,
    subject: Any,
    total_amount: Any,
    body: Any = None,
    status: Any = OrderStatus.PENDING,
) -> Tuple[Optional[int], List[str]]:
    """Check every order rule and collect all violations."""
    violations = []

    if not out_trade_no or not isinstance(out_trade_no, str):
        violations.append("outTradeNo is required and must be a string")
    elif not OUT_TRADE_NO_PATTERN.match(out_trade_no):
        violations.append(
            "outTradeNo must be 6-64 characters long and contain only letters, numbers, and underscores"
        )

    if not isinstance(subject, str) or not subject.strip():
        violations.append("subject is required and must be a non-empty string")
    elif len(subject) > SUBJECT_MAX_LENGTH:
        violations.append(f"subject must be at most {SUBJECT_MAX_LENGTH} characters")

    if body is not None:
        if not isinstance(body, str):
            violations.append("body must be a string")
        elif len(body) > BODY_MAX_LENGTH:
            violations.append(f"body must be at most {BODY_MAX_LENGTH} characters")

    cents, amount_violations = parse_amount(total_amount)
    violations.extend(amount_violations)

    if OrderStatus.parse(status) is None:
        valid = ", ".join(s.value for s in OrderStatus)
        violations.append(f"Invalid status: {status}. Valid statuses are: {valid}")

    return cents, violations


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class Order:
    """A payment intent and its status machine.

    ``out_trade_no`` uniqueness is enforced by the store, not here.
    """

    def __init__(
        self,
        out_trade_no: str,
        subject: str,
        total_amount: Any,
        body: Optional[str] = None,
        status: Any = OrderStatus.PENDING,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        trade_no: Optional[str] = None,
        buyer_logon_id: Optional[str] = None,
        payment_time: Optional[datetime] = None,
    ):
        cents, violations = validate_order_fields(out_trade_no, subject, total_amount, body, status)
        if violations:
            raise ValidationError(violations)

        now = utcnow()
        self.id = id or f"order_{uuid.uuid4().hex}"
        self.out_trade_no = out_trade_no
        self.subject = subject
        self.body = body if body else subject
        self.amount_cents = cents
        self.status = OrderStatus(status)
        self.created_at = created_at or now
        self.updated_at = updated_at or self.created_at
        self.trade_no = trade_no
        self.buyer_logon_id = buyer_logon_id
        self.payment_time = payment_time

    @property
    def total_amount(self) -> Decimal:
        return Decimal(self.amount_cents) / 100

    def update_status(self, new_status: Any) -> None:
        target = OrderStatus.parse(new_status)
        if target is None:
            raise UnknownStatusError(new_status)
        if target not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value)

        self.status = target
        self.updated_at = utcnow()
        if target is OrderStatus.PAID and self.payment_time is None:
            self.payment_time = self.updated_at

    def set_gateway_info(self, trade_no: Optional[str], buyer_logon_id: Optional[str]) -> None:
        self.trade_no = trade_no
        self.buyer_logon_id = buyer_logon_id
        self.updated_at = utcnow()

    def can_pay(self) -> bool:
        return self.status is OrderStatus.PENDING

    def is_paid(self) -> bool:
        return self.status is OrderStatus.PAID

    def copy(self) -> "Order":
        return copy.copy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "out_trade_no": self.out_trade_no,
            "subject": self.subject,
            "body": self.body,
            "total_amount": format_amount(self.amount_cents),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "trade_no": self.trade_no,
            "buyer_logon_id": self.buyer_logon_id,
            "payment_time": self.payment_time.isoformat() if self.payment_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            id=data.get("id"),
            out_trade_no=data.get("out_trade_no"),
            subject=data.get("subject"),
            body=data.get("body"),
            total_amount=data.get("total_amount"),
            status=data.get("status", OrderStatus.PENDING),
            created_at=_parse_time(data.get("created_at")),
            updated_at=_parse_time(data.get("updated_at")),
            trade_no=data.get("trade_no"),
            buyer_logon_id=data.get("buyer_logon_id"),
            payment_time=_parse_time(data.get("payment_time")),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Order):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"Order(id={self.id!r}, out_trade_no={self.out_trade_no!r}, status={self.status.value!r})"
