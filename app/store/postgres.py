# app/store/postgres.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from psycopg2.errors import UniqueViolation
from psycopg2.extras import RealDictCursor

from app.errors import ConflictError, DuplicateError, NotFoundError
from app.ious.model import IouRecord
from app.settlements.model import ACTIVE_PHASES, SettlementAttempt, assert_phase_transition
from app.store.base import normalize_username
from db import get_conn

TIMESTAMP_COLUMNS = ("accepted_at", "paid_at", "cancelled_at")

_IOU_COLUMNS = """
  id::text AS id, owner_id, direction, counterparty, amount, note, due_date,
  status, created_at, accepted_at, paid_at, cancelled_at
"""

_ATTEMPT_COLUMNS = """
  id::text AS id, iou_id::text AS iou_id, provider_payment_id, phase, amount, memo,
  txid, last_error, created_at, updated_at
"""


def _check_uuid(value: str, what: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError):
        raise NotFoundError(f"{what} {value} not found")


def _iou_from_row(row: dict[str, Any]) -> IouRecord:
    return IouRecord(**row)


def _attempt_from_row(row: dict[str, Any]) -> SettlementAttempt:
    return SettlementAttempt(**row)


class PostgresStore:
    """
    IouStore backed by PostgreSQL (schema from alembic 0001).

    Status and phase changes are conditional UPDATEs; callers learn about a
    lost race from rowcount == 0. Inserting an attempt and idle-guarded
    status updates lock the IOU row first so they serialize with each other.
    """

    # ==========================================================
    # Records
    # ==========================================================

    def insert(self, record: IouRecord) -> IouRecord:
        try:
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO app.ious (
                          id, owner_id, direction, counterparty, amount, note, due_date,
                          status, created_at, accepted_at, paid_at, cancelled_at
                        )
                        VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            record.id,
                            record.owner_id,
                            record.direction,
                            record.counterparty,
                            record.amount,
                            record.note,
                            record.due_date,
                            record.status,
                            record.created_at,
                            record.accepted_at,
                            record.paid_at,
                            record.cancelled_at,
                        ),
                    )
        except UniqueViolation:
            raise DuplicateError(f"IOU {record.id} already exists")
        return record

    def _select_iou(self, cur, iou_id: str, *, for_update: bool = False) -> Optional[dict]:
        lock_sql = "FOR UPDATE" if for_update else ""
        cur.execute(
            f"SELECT {_IOU_COLUMNS} FROM app.ious WHERE id = %s::uuid {lock_sql}",
            (iou_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None

    def fetch_by_id(self, iou_id: str) -> IouRecord:
        iou_id = _check_uuid(iou_id, "IOU")
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                row = self._select_iou(cur, iou_id)
        if not row:
            raise NotFoundError(f"IOU {iou_id} not found")
        return _iou_from_row(row)

    def update_status(
        self,
        iou_id: str,
        *,
        expected_status: str,
        new_status: str,
        timestamp_field: Optional[str],
        require_idle: bool = False,
    ) -> IouRecord:
        iou_id = _check_uuid(iou_id, "IOU")
        if timestamp_field is not None and timestamp_field not in TIMESTAMP_COLUMNS:
            raise ValueError(f"Unknown timestamp field: {timestamp_field}")

        # COALESCE keeps an already stamped timestamp.
        stamp_sql = f", {timestamp_field} = COALESCE({timestamp_field}, now())" if timestamp_field else ""

        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                if require_idle:
                    if self._select_iou(cur, iou_id, for_update=True) is None:
                        raise NotFoundError(f"IOU {iou_id} not found")
                    if self._select_active(cur, iou_id) is not None:
                        raise ConflictError(f"Settlement in flight for IOU {iou_id}")

                cur.execute(
                    f"""
                    UPDATE app.ious
                    SET status = %s{stamp_sql}
                    WHERE id = %s::uuid
                      AND status = %s
                    RETURNING {_IOU_COLUMNS}
                    """,
                    (new_status, iou_id, expected_status),
                )
                row = cur.fetchone()
                if row:
                    return _iou_from_row(dict(row))

                current = self._select_iou(cur, iou_id)

        if not current:
            raise NotFoundError(f"IOU {iou_id} not found")
        raise ConflictError(f"IOU {iou_id} is {current['status']}, expected {expected_status}")

    # ==========================================================
    # Settlement attempts
    # ==========================================================

    def _select_active(self, cur, iou_id: str) -> Optional[dict]:
        cur.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS}
            FROM app.settlement_attempts
            WHERE iou_id = %s::uuid
              AND phase = ANY(%s)
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (iou_id, list(ACTIVE_PHASES)),
        )
        row = cur.fetchone()
        return dict(row) if row else None

    def insert_attempt(self, attempt: SettlementAttempt, *, record_statuses: Sequence[str]) -> SettlementAttempt:
        try:
            with get_conn() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    record = self._select_iou(cur, attempt.iou_id, for_update=True)
                    if record is None:
                        raise NotFoundError(f"IOU {attempt.iou_id} not found")
                    if record["status"] not in record_statuses:
                        raise ConflictError(f"IOU {attempt.iou_id} is {record['status']}, cannot start settlement")

                    # ux_settlement_attempts_single_flight backs this check up
                    if self._select_active(cur, attempt.iou_id) is not None:
                        raise ConflictError(f"Settlement already in flight for IOU {attempt.iou_id}")

                    cur.execute(
                        """
                        INSERT INTO app.settlement_attempts (
                          id, iou_id, provider_payment_id, phase, amount, memo,
                          txid, last_error, created_at, updated_at
                        )
                        VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            attempt.id,
                            attempt.iou_id,
                            attempt.provider_payment_id,
                            attempt.phase,
                            attempt.amount,
                            attempt.memo,
                            attempt.txid,
                            attempt.last_error,
                            attempt.created_at,
                            attempt.updated_at,
                        ),
                    )
        except UniqueViolation:
            raise ConflictError(f"Settlement already in flight for IOU {attempt.iou_id}")
        return attempt

    def fetch_attempt(self, attempt_id: str) -> SettlementAttempt:
        attempt_id = _check_uuid(attempt_id, "Attempt")
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {_ATTEMPT_COLUMNS} FROM app.settlement_attempts WHERE id = %s::uuid",
                    (attempt_id,),
                )
                row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        return _attempt_from_row(dict(row))

    def fetch_active_attempt(self, iou_id: str) -> Optional[SettlementAttempt]:
        iou_id = _check_uuid(iou_id, "IOU")
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                row = self._select_active(cur, iou_id)
        return _attempt_from_row(row) if row else None

    def fetch_attempt_by_payment_id(self, provider_payment_id: str) -> Optional[SettlementAttempt]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_ATTEMPT_COLUMNS}
                    FROM app.settlement_attempts
                    WHERE provider_payment_id = %s
                    LIMIT 1
                    """,
                    (provider_payment_id,),
                )
                row = cur.fetchone()
        return _attempt_from_row(dict(row)) if row else None

    def bind_payment_id(self, attempt_id: str, provider_payment_id: str) -> SettlementAttempt:
        attempt_id = _check_uuid(attempt_id, "Attempt")
        try:
            with get_conn() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        f"""
                        UPDATE app.settlement_attempts
                        SET provider_payment_id = %s,
                            updated_at = now()
                        WHERE id = %s::uuid
                          AND (provider_payment_id IS NULL OR provider_payment_id = %s)
                        RETURNING {_ATTEMPT_COLUMNS}
                        """,
                        (provider_payment_id, attempt_id, provider_payment_id),
                    )
                    row = cur.fetchone()
        except UniqueViolation:
            raise ConflictError(f"Payment {provider_payment_id} is bound to another attempt")

        if row:
            return _attempt_from_row(dict(row))
        current = self.fetch_attempt(attempt_id)
        raise ConflictError(f"Attempt {attempt_id} already bound to {current.provider_payment_id}")

    def update_phase(
        self,
        attempt_id: str,
        *,
        expected_phase: str,
        new_phase: str,
        txid: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> SettlementAttempt:
        attempt_id = _check_uuid(attempt_id, "Attempt")
        assert_phase_transition(expected_phase, new_phase)

        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    UPDATE app.settlement_attempts
                    SET phase = %s,
                        txid = COALESCE(%s, txid),
                        last_error = COALESCE(%s, last_error),
                        updated_at = now()
                    WHERE id = %s::uuid
                      AND phase = %s
                    RETURNING {_ATTEMPT_COLUMNS}
                    """,
                    (new_phase, txid, last_error, attempt_id, expected_phase),
                )
                row = cur.fetchone()

        if row:
            return _attempt_from_row(dict(row))
        current = self.fetch_attempt(attempt_id)
        raise ConflictError(f"Attempt {attempt_id} is {current.phase}, expected {expected_phase}")

    def list_stale_attempts(self, *, phase: str, older_than: datetime) -> list[SettlementAttempt]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_ATTEMPT_COLUMNS}
                    FROM app.settlement_attempts
                    WHERE phase = %s
                      AND created_at <= %s
                    ORDER BY created_at
                    """,
                    (phase, older_than),
                )
                rows = cur.fetchall()
        return [_attempt_from_row(dict(r)) for r in rows]

    # ==========================================================
    # Users
    # ==========================================================

    def upsert_user(self, user_id: str, username: Optional[str]) -> None:
        name = normalize_username(username)
        with get_conn() as conn:
            with conn.cursor() as cur:
                if name:
                    # a username moves with whoever the provider last verified for it
                    cur.execute(
                        "UPDATE app.users SET username = NULL WHERE username = %s AND id <> %s",
                        (name, user_id),
                    )
                cur.execute(
                    """
                    INSERT INTO app.users (id, username, last_seen_at)
                    VALUES (%s, NULLIF(%s, ''), now())
                    ON CONFLICT (id) DO UPDATE
                    SET username = COALESCE(EXCLUDED.username, app.users.username),
                        last_seen_at = now()
                    """,
                    (user_id, name),
                )

    def resolve_username(self, username: str) -> Optional[str]:
        name = normalize_username(username)
        if not name:
            return None
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM app.users WHERE username = %s LIMIT 1", (name,))
                row = cur.fetchone()
        return row[0] if row else None
