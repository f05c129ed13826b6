from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.errors import ConflictError, DuplicateError, IllegalTransitionError, NotFoundError
from app.ious.model import SETTLEABLE_STATUSES, create_iou
from app.settlements.model import SettlementAttempt
from app.store.memory import MemoryStore


def _seed(store: MemoryStore):
    return store.insert(create_iou("uid-alice", "outgoing", "bob", 10))


def _attempt(record, **kw) -> SettlementAttempt:
    return SettlementAttempt(iou_id=record.id, amount=record.amount, memo="IOU payment to bob", **kw)


def test_insert_and_fetch():
    store = MemoryStore()
    record = _seed(store)
    assert store.fetch_by_id(record.id) == record

    with pytest.raises(DuplicateError):
        store.insert(record)
    with pytest.raises(NotFoundError):
        store.fetch_by_id("missing")


def test_update_status_is_compare_and_swap():
    store = MemoryStore()
    record = _seed(store)

    accepted = store.update_status(record.id, expected_status="pending", new_status="accepted", timestamp_field="accepted_at")
    assert accepted.status == "accepted"
    assert accepted.accepted_at is not None

    with pytest.raises(ConflictError):
        store.update_status(record.id, expected_status="pending", new_status="cancelled", timestamp_field="cancelled_at")
    assert store.fetch_by_id(record.id).status == "accepted"


def test_require_idle_blocks_while_attempt_in_flight():
    store = MemoryStore()
    record = _seed(store)
    store.insert_attempt(_attempt(record), record_statuses=SETTLEABLE_STATUSES)

    with pytest.raises(ConflictError):
        store.update_status(
            record.id,
            expected_status="pending",
            new_status="cancelled",
            timestamp_field="cancelled_at",
            require_idle=True,
        )
    assert store.fetch_by_id(record.id).status == "pending"


def test_single_flight_per_record():
    store = MemoryStore()
    record = _seed(store)
    first = store.insert_attempt(_attempt(record), record_statuses=SETTLEABLE_STATUSES)

    with pytest.raises(ConflictError):
        store.insert_attempt(_attempt(record), record_statuses=SETTLEABLE_STATUSES)

    store.update_phase(first.id, expected_phase="initiated", new_phase="cancelled")
    second = store.insert_attempt(_attempt(record), record_statuses=SETTLEABLE_STATUSES)
    assert store.fetch_active_attempt(record.id).id == second.id


def test_insert_attempt_checks_record_status():
    store = MemoryStore()
    record = _seed(store)
    store.update_status(record.id, expected_status="pending", new_status="paid", timestamp_field="paid_at")

    with pytest.raises(ConflictError):
        store.insert_attempt(_attempt(record), record_statuses=SETTLEABLE_STATUSES)


def test_bind_payment_id_is_unique():
    store = MemoryStore()
    r1 = _seed(store)
    r2 = _seed(store)
    a1 = store.insert_attempt(_attempt(r1), record_statuses=SETTLEABLE_STATUSES)
    a2 = store.insert_attempt(_attempt(r2), record_statuses=SETTLEABLE_STATUSES)

    bound = store.bind_payment_id(a1.id, "pay-1")
    assert bound.provider_payment_id == "pay-1"
    assert store.fetch_attempt_by_payment_id("pay-1").id == a1.id

    # same binding again is a no-op
    assert store.bind_payment_id(a1.id, "pay-1").provider_payment_id == "pay-1"

    with pytest.raises(ConflictError):
        store.bind_payment_id(a2.id, "pay-1")
    with pytest.raises(ConflictError):
        store.bind_payment_id(a1.id, "pay-2")


def test_update_phase_enforces_expected_and_graph():
    store = MemoryStore()
    record = _seed(store)
    attempt = store.insert_attempt(_attempt(record), record_statuses=SETTLEABLE_STATUSES)

    with pytest.raises(ConflictError):
        store.update_phase(attempt.id, expected_phase="approved", new_phase="completed")
    with pytest.raises(IllegalTransitionError):
        store.update_phase(attempt.id, expected_phase="initiated", new_phase="completed")

    approved = store.update_phase(attempt.id, expected_phase="initiated", new_phase="approved")
    completed = store.update_phase(approved.id, expected_phase="approved", new_phase="completed", txid="tx-1")
    assert completed.txid == "tx-1"
    assert not completed.is_active
    assert store.fetch_active_attempt(record.id) is None

    with pytest.raises(IllegalTransitionError):
        store.update_phase(attempt.id, expected_phase="completed", new_phase="cancelled")


def test_list_stale_attempts_filters_by_phase_and_age():
    store = MemoryStore()
    now = datetime.now(timezone.utc)
    r1 = _seed(store)
    r2 = _seed(store)
    old = store.insert_attempt(_attempt(r1, created_at=now - timedelta(hours=1)), record_statuses=SETTLEABLE_STATUSES)
    store.insert_attempt(_attempt(r2), record_statuses=SETTLEABLE_STATUSES)

    stale = store.list_stale_attempts(phase="initiated", older_than=now - timedelta(minutes=15))
    assert [a.id for a in stale] == [old.id]
    assert store.list_stale_attempts(phase="approved", older_than=now) == []


def test_username_resolution_is_case_insensitive():
    store = MemoryStore()
    store.upsert_user("uid-bob", "Bob")
    assert store.resolve_username("@bob") == "uid-bob"
    assert store.resolve_username("BOB") == "uid-bob"
    assert store.resolve_username("carol") is None
