# app/ious/service.py
from __future__ import annotations

import logging
from typing import Any, Optional

from app.errors import ConflictError, NotAuthorizedError
from app.ious import state_machine
from app.ious.model import IouRecord, create_iou
from app.store.base import IouStore
from services.metrics import increment_iou_transition

logger = logging.getLogger("ioupay.ious")


def resolve_counterparty(store: IouStore, record: IouRecord) -> Optional[str]:
    return store.resolve_username(record.counterparty)


def create(
    store: IouStore,
    *,
    owner_id: str,
    direction: str,
    counterparty: str,
    amount: Any,
    note: Optional[str] = None,
    due_date: Any = None,
) -> IouRecord:
    record = create_iou(owner_id, direction, counterparty, amount, note=note, due_date=due_date)
    stored = store.insert(record)
    logger.info("iou created id=%s owner=%s direction=%s amount=%s", stored.id, stored.owner_id, stored.direction, stored.amount)
    return stored


def get_for_user(store: IouStore, iou_id: str, user_id: str) -> IouRecord:
    record = store.fetch_by_id(iou_id)
    if not state_machine.is_participant(record, user_id, resolve_counterparty(store, record)):
        raise NotAuthorizedError("Not a participant of this IOU")
    return record


def _apply(store: IouStore, record: IouRecord, transition: state_machine.Transition, *, require_idle: bool = False) -> IouRecord:
    try:
        updated = store.update_status(
            record.id,
            expected_status=transition.from_status,
            new_status=transition.to_status,
            timestamp_field=transition.timestamp_field,
            require_idle=require_idle,
        )
    except ConflictError:
        current = store.fetch_by_id(record.id)
        logger.warning(
            "iou transition lost race id=%s wanted=%s->%s now=%s",
            record.id,
            transition.from_status,
            transition.to_status,
            current.status,
        )
        raise

    increment_iou_transition(updated.status)
    logger.info("iou %s -> %s id=%s", transition.from_status, updated.status, updated.id)
    return updated


def accept(store: IouStore, iou_id: str, acting_user_id: str) -> IouRecord:
    record = store.fetch_by_id(iou_id)
    transition = state_machine.accept(record, acting_user_id, resolve_counterparty(store, record))
    return _apply(store, record, transition)


def reject(store: IouStore, iou_id: str, acting_user_id: str) -> IouRecord:
    record = store.fetch_by_id(iou_id)
    transition = state_machine.reject(record, acting_user_id, resolve_counterparty(store, record))
    # A debt with a payment in flight cannot be cancelled underneath it.
    return _apply(store, record, transition, require_idle=True)
