# app/store/base.py
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from app.ious.model import IouRecord
from app.settlements.model import SettlementAttempt


class IouStore(Protocol):
    """
    Persistence contract for IOU records and settlement attempts.

    Every status/phase change is a compare-and-swap: the update applies only
    when the stored value still equals the expected one, otherwise
    ConflictError is raised and the caller must re-fetch.
    """

    # --- records ---
    def insert(self, record: IouRecord) -> IouRecord: ...
    def fetch_by_id(self, iou_id: str) -> IouRecord: ...
    def update_status(
        self,
        iou_id: str,
        *,
        expected_status: str,
        new_status: str,
        timestamp_field: Optional[str],
        require_idle: bool = False,
    ) -> IouRecord: ...

    # --- settlement attempts ---
    def insert_attempt(self, attempt: SettlementAttempt, *, record_statuses: Sequence[str]) -> SettlementAttempt: ...
    def fetch_attempt(self, attempt_id: str) -> SettlementAttempt: ...
    def fetch_active_attempt(self, iou_id: str) -> Optional[SettlementAttempt]: ...
    def fetch_attempt_by_payment_id(self, provider_payment_id: str) -> Optional[SettlementAttempt]: ...
    def bind_payment_id(self, attempt_id: str, provider_payment_id: str) -> SettlementAttempt: ...
    def update_phase(
        self,
        attempt_id: str,
        *,
        expected_phase: str,
        new_phase: str,
        txid: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> SettlementAttempt: ...
    def list_stale_attempts(self, *, phase: str, older_than: datetime) -> list[SettlementAttempt]: ...

    # --- users ---
    def upsert_user(self, user_id: str, username: Optional[str]) -> None: ...
    def resolve_username(self, username: str) -> Optional[str]: ...


def normalize_username(value: Optional[str]) -> str:
    return (value or "").strip().lstrip("@").lower()
