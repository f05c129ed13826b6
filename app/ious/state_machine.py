# app/ious/state_machine.py
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from app.errors import ConflictError, IllegalTransitionError, NotAuthorizedError
from app.ious.model import IouRecord, SETTLEABLE_STATUSES
from app.settlements.model import SettlementAttempt


ALLOWED = {
    "pending": {"accepted", "cancelled", "paid"},  # pending->paid: settle without explicit acceptance
    "accepted": {"paid", "cancelled"},
    "paid": set(),
    "cancelled": set(),
}

TIMESTAMP_FIELDS = {
    "accepted": "accepted_at",
    "paid": "paid_at",
    "cancelled": "cancelled_at",
}


@dataclass(frozen=True)
class Transition:
    from_status: str
    to_status: str
    timestamp_field: Optional[str]


def assert_transition(old: str, new: str) -> None:
    if new not in ALLOWED.get(old, set()):
        raise IllegalTransitionError(f"Illegal IOU transition: {old} -> {new}")


def _transition(record: IouRecord, new: str) -> Transition:
    assert_transition(record.status, new)
    return Transition(record.status, new, TIMESTAMP_FIELDS.get(new))


def apply_transition(record: IouRecord, transition: Transition, at: datetime | None = None) -> IouRecord:
    """
    Project a transition onto a record.

    Timestamps are append-only: an already stamped field keeps its value.
    """
    if record.status != transition.from_status:
        raise ConflictError(
            f"IOU {record.id} is {record.status}, expected {transition.from_status}"
        )
    changes: dict = {"status": transition.to_status}
    field_name = transition.timestamp_field
    if field_name and getattr(record, field_name) is None:
        changes[field_name] = at or datetime.now(timezone.utc)
    return replace(record, **changes)


# ----------------------------
# Authorization helpers
# ----------------------------

def is_counterparty(record: IouRecord, user_id: str, counterparty_user_id: Optional[str]) -> bool:
    """
    Resolved counterparty must match exactly; an unresolvable one admits any non-owner.
    """
    if counterparty_user_id:
        return user_id == counterparty_user_id
    return bool(user_id) and user_id != record.owner_id


def is_participant(record: IouRecord, user_id: str, counterparty_user_id: Optional[str]) -> bool:
    return user_id == record.owner_id or is_counterparty(record, user_id, counterparty_user_id)


def is_debtor(record: IouRecord, user_id: str, counterparty_user_id: Optional[str]) -> bool:
    if record.direction == "outgoing":
        return user_id == record.owner_id
    return is_counterparty(record, user_id, counterparty_user_id)


def settlement_memo(record: IouRecord) -> str:
    memo = f"IOU payment to {record.counterparty}"
    if record.note:
        memo = f"{memo}: {record.note}"
    return memo


# ----------------------------
# Operations
# ----------------------------

def accept(record: IouRecord, acting_user_id: str, counterparty_user_id: Optional[str] = None) -> Transition:
    if record.status != "pending":
        raise IllegalTransitionError(f"Cannot accept IOU in status {record.status}")
    if not is_counterparty(record, acting_user_id, counterparty_user_id):
        raise NotAuthorizedError("Only the counterparty can accept this IOU")
    return _transition(record, "accepted")


def reject(record: IouRecord, acting_user_id: str, counterparty_user_id: Optional[str] = None) -> Transition:
    if record.status != "pending":
        raise IllegalTransitionError(f"Cannot reject IOU in status {record.status}")
    if not is_participant(record, acting_user_id, counterparty_user_id):
        raise NotAuthorizedError("Only a participant can reject this IOU")
    return _transition(record, "cancelled")


def begin_settlement(
    record: IouRecord,
    acting_user_id: str,
    active_attempt: Optional[SettlementAttempt] = None,
    counterparty_user_id: Optional[str] = None,
) -> SettlementAttempt:
    if record.status not in SETTLEABLE_STATUSES:
        raise IllegalTransitionError(f"Cannot settle IOU in status {record.status}")
    if active_attempt is not None and active_attempt.is_active:
        raise ConflictError(f"Settlement already in flight for IOU {record.id}")
    if not is_debtor(record, acting_user_id, counterparty_user_id):
        raise NotAuthorizedError("Only the debtor can settle this IOU")
    return SettlementAttempt(
        iou_id=record.id,
        amount=record.amount,
        memo=settlement_memo(record),
    )


def finalize_settlement(record: IouRecord, attempt: SettlementAttempt) -> Optional[Transition]:
    """
    Returns None when the record is already paid (duplicate completion).
    """
    if attempt.iou_id != record.id:
        raise ConflictError(f"Attempt {attempt.id} does not belong to IOU {record.id}")
    if attempt.phase != "completed":
        raise IllegalTransitionError(f"Cannot finalize attempt in phase {attempt.phase}")
    if record.status == "paid":
        return None
    return _transition(record, "paid")


def abort_settlement(record: IouRecord, attempt: SettlementAttempt) -> None:
    # Record status is left alone: a failed payment does not cancel the debt.
    if attempt.iou_id != record.id:
        raise ConflictError(f"Attempt {attempt.id} does not belong to IOU {record.id}")
    if attempt.phase not in ("cancelled", "errored"):
        raise IllegalTransitionError(f"Cannot abort attempt in phase {attempt.phase}")
