# app/ious/model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Literal, Optional

from app.errors import ValidationError

IouStatus = Literal["pending", "accepted", "paid", "cancelled"]
Direction = Literal["outgoing", "incoming"]

DIRECTIONS = ("outgoing", "incoming")
TERMINAL_STATUSES = ("paid", "cancelled")
SETTLEABLE_STATUSES = ("pending", "accepted")

AMOUNT_DECIMAL_PLACES = 7
MAX_AMOUNT = Decimal("1E13")


@dataclass(frozen=True)
class IouRecord:
    id: str
    owner_id: str
    direction: Direction
    counterparty: str
    amount: Decimal
    note: Optional[str]
    due_date: Optional[date]
    status: IouStatus
    created_at: datetime
    accepted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "direction": self.direction,
            "counterparty": self.counterparty,
            "amount": self.amount,
            "note": self.note,
            "due_date": self.due_date,
            "status": self.status,
            "created_at": self.created_at,
            "accepted_at": self.accepted_at,
            "paid_at": self.paid_at,
            "cancelled_at": self.cancelled_at,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError("amount must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount must be a finite number greater than 0")
    # stored as numeric(20, 7)
    if amount.normalize().as_tuple().exponent < -AMOUNT_DECIMAL_PLACES:
        raise ValidationError(f"amount must have at most {AMOUNT_DECIMAL_PLACES} decimal places")
    if amount >= MAX_AMOUNT:
        raise ValidationError("amount is too large")
    return amount


def _parse_due_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise ValidationError("due_date must be an ISO date (YYYY-MM-DD)")


def create_iou(
    owner_id: str,
    direction: str,
    counterparty: str,
    amount: Any,
    note: Optional[str] = None,
    due_date: Any = None,
) -> IouRecord:
    """
    Build a new pending IouRecord from raw input.

    Strings are trimmed and blank optional fields are stored as None.
    Raises ValidationError on malformed input; nothing is persisted here.
    """
    owner = _clean_text(owner_id)
    if not owner:
        raise ValidationError("owner_id is required")

    normalized_direction = (direction or "").strip().lower() if isinstance(direction, str) else ""
    if normalized_direction not in DIRECTIONS:
        raise ValidationError("direction must be 'outgoing' or 'incoming'")

    party = _clean_text(counterparty)
    if not party:
        raise ValidationError("counterparty is required")

    return IouRecord(
        id=str(uuid.uuid4()),
        owner_id=owner,
        direction=normalized_direction,  # type: ignore[arg-type]
        counterparty=party,
        amount=_parse_amount(amount),
        note=_clean_text(note),
        due_date=_parse_due_date(due_date),
        status="pending",
        created_at=_utcnow(),
    )
