# app/store/memory.py
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Optional, Sequence

from app.errors import ConflictError, DuplicateError, NotFoundError
from app.ious.model import IouRecord
from app.settlements.model import SettlementAttempt, assert_phase_transition
from app.store.base import normalize_username


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """
    Process-local IouStore used by tests and `STORE_BACKEND=memory`.

    Read-modify-write on a record (and its attempts) runs under that record's
    lock; different records never share one. `_index_lock` only guards the
    lock table and the provider_payment_id index.
    """

    def __init__(self) -> None:
        self._records: dict[str, IouRecord] = {}
        self._attempts: dict[str, SettlementAttempt] = {}
        self._by_payment_id: dict[str, str] = {}
        self._users: dict[str, str] = {}
        self._locks: dict[str, Lock] = {}
        self._index_lock = Lock()

    def _lock_for(self, iou_id: str) -> Lock:
        with self._index_lock:
            return self._locks.setdefault(iou_id, Lock())

    # ==========================================================
    # Records
    # ==========================================================

    def insert(self, record: IouRecord) -> IouRecord:
        with self._lock_for(record.id):
            if record.id in self._records:
                raise DuplicateError(f"IOU {record.id} already exists")
            self._records[record.id] = record
            return record

    def fetch_by_id(self, iou_id: str) -> IouRecord:
        record = self._records.get(iou_id)
        if record is None:
            raise NotFoundError(f"IOU {iou_id} not found")
        return record

    def update_status(
        self,
        iou_id: str,
        *,
        expected_status: str,
        new_status: str,
        timestamp_field: Optional[str],
        require_idle: bool = False,
    ) -> IouRecord:
        with self._lock_for(iou_id):
            record = self.fetch_by_id(iou_id)
            if record.status != expected_status:
                raise ConflictError(f"IOU {iou_id} is {record.status}, expected {expected_status}")
            if require_idle and self._active_for(iou_id) is not None:
                raise ConflictError(f"Settlement in flight for IOU {iou_id}")

            changes: dict = {"status": new_status}
            if timestamp_field and getattr(record, timestamp_field) is None:
                changes[timestamp_field] = _utcnow()
            updated = replace(record, **changes)
            self._records[iou_id] = updated
            return updated

    # ==========================================================
    # Settlement attempts
    # ==========================================================

    def _active_for(self, iou_id: str) -> Optional[SettlementAttempt]:
        for attempt in list(self._attempts.values()):
            if attempt.iou_id == iou_id and attempt.is_active:
                return attempt
        return None

    def insert_attempt(self, attempt: SettlementAttempt, *, record_statuses: Sequence[str]) -> SettlementAttempt:
        with self._lock_for(attempt.iou_id):
            record = self.fetch_by_id(attempt.iou_id)
            if record.status not in record_statuses:
                raise ConflictError(f"IOU {record.id} is {record.status}, cannot start settlement")
            if self._active_for(attempt.iou_id) is not None:
                raise ConflictError(f"Settlement already in flight for IOU {attempt.iou_id}")
            if attempt.id in self._attempts:
                raise DuplicateError(f"Attempt {attempt.id} already exists")
            self._attempts[attempt.id] = attempt
            return attempt

    def fetch_attempt(self, attempt_id: str) -> SettlementAttempt:
        attempt = self._attempts.get(attempt_id)
        if attempt is None:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        return attempt

    def fetch_active_attempt(self, iou_id: str) -> Optional[SettlementAttempt]:
        return self._active_for(iou_id)

    def fetch_attempt_by_payment_id(self, provider_payment_id: str) -> Optional[SettlementAttempt]:
        attempt_id = self._by_payment_id.get(provider_payment_id)
        return self._attempts.get(attempt_id) if attempt_id else None

    def bind_payment_id(self, attempt_id: str, provider_payment_id: str) -> SettlementAttempt:
        current = self.fetch_attempt(attempt_id)
        with self._lock_for(current.iou_id), self._index_lock:
            attempt = self.fetch_attempt(attempt_id)
            owner = self._by_payment_id.get(provider_payment_id)
            if owner is not None and owner != attempt_id:
                raise ConflictError(f"Payment {provider_payment_id} is bound to another attempt")
            if attempt.provider_payment_id == provider_payment_id:
                return attempt
            if attempt.provider_payment_id is not None:
                raise ConflictError(f"Attempt {attempt_id} already bound to {attempt.provider_payment_id}")
            updated = replace(attempt, provider_payment_id=provider_payment_id, updated_at=_utcnow())
            self._attempts[attempt_id] = updated
            self._by_payment_id[provider_payment_id] = attempt_id
            return updated

    def update_phase(
        self,
        attempt_id: str,
        *,
        expected_phase: str,
        new_phase: str,
        txid: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> SettlementAttempt:
        current = self.fetch_attempt(attempt_id)
        with self._lock_for(current.iou_id):
            attempt = self.fetch_attempt(attempt_id)
            if attempt.phase != expected_phase:
                raise ConflictError(f"Attempt {attempt_id} is {attempt.phase}, expected {expected_phase}")
            assert_phase_transition(attempt.phase, new_phase)
            updated = replace(
                attempt,
                phase=new_phase,
                txid=txid or attempt.txid,
                last_error=last_error if last_error is not None else attempt.last_error,
                updated_at=_utcnow(),
            )
            self._attempts[attempt_id] = updated
            return updated

    def list_stale_attempts(self, *, phase: str, older_than: datetime) -> list[SettlementAttempt]:
        return sorted(
            (a for a in list(self._attempts.values()) if a.phase == phase and a.created_at <= older_than),
            key=lambda a: a.created_at,
        )

    # ==========================================================
    # Users
    # ==========================================================

    def upsert_user(self, user_id: str, username: Optional[str]) -> None:
        name = normalize_username(username)
        if name:
            with self._index_lock:
                self._users[name] = user_id

    def resolve_username(self, username: str) -> Optional[str]:
        return self._users.get(normalize_username(username))
