from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Optional

from app.errors import IllegalTransitionError

Phase = Literal["initiated", "approved", "completed", "cancelled", "errored"]

ACTIVE_PHASES = ("initiated", "approved")
TERMINAL_PHASES = ("completed", "cancelled", "errored")

ALLOWED_PHASES = {
    "initiated": {"approved", "cancelled", "errored"},
    "approved": {"completed", "cancelled", "errored"},
    "completed": set(),
    "cancelled": set(),
    "errored": set(),
}


def assert_phase_transition(old: str, new: str) -> None:
    if new not in ALLOWED_PHASES.get(old, set()):
        raise IllegalTransitionError(f"Illegal settlement transition: {old} -> {new}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SettlementAttempt:
    iou_id: str
    amount: Decimal
    memo: str
    phase: Phase = "initiated"
    provider_payment_id: Optional[str] = None
    txid: Optional[str] = None
    last_error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.phase in ACTIVE_PHASES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "iou_id": self.iou_id,
            "provider_payment_id": self.provider_payment_id,
            "phase": self.phase,
            "amount": self.amount,
            "memo": self.memo,
            "txid": self.txid,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
