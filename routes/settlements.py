# routes/settlements.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.errors import IouError, ValidationError
from app.ious import service
from app.settlements.coordinator import SettlementCoordinator
from app.store.base import IouStore
from deps.auth import CurrentUser, get_current_user
from deps.services import get_coordinator, get_store
from schemas import (
    CallbackAckResponse,
    IncompletePaymentRequest,
    ProviderCallbackRequest,
    SettlementAttemptResponse,
)
from services.domain_errors import raise_http_from_domain_error

router = APIRouter(prefix="/v1", tags=["settlements"])
logger = logging.getLogger("ioupay.settlements.http")


def _require_payment_id(body: ProviderCallbackRequest) -> str:
    payment_id = (body.provider_payment_id or "").strip()
    if not payment_id:
        raise ValidationError("provider_payment_id is required")
    return payment_id


@router.post("/ious/{iou_id}/settlements", status_code=201, response_model=SettlementAttemptResponse)
def begin_settlement(
    iou_id: str,
    user: CurrentUser = Depends(get_current_user),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    try:
        attempt = coordinator.begin_settlement(iou_id, user.user_id)
    except IouError as e:
        raise_http_from_domain_error(e)
    return attempt.to_dict()


@router.get("/ious/{iou_id}/settlements/active", response_model=SettlementAttemptResponse)
def get_active_settlement(
    iou_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: IouStore = Depends(get_store),
):
    try:
        service.get_for_user(store, iou_id, user.user_id)
        attempt = store.fetch_active_attempt(iou_id)
    except IouError as e:
        raise_http_from_domain_error(e)
    if attempt is None:
        raise HTTPException(status_code=404, detail={"error": "NOT_FOUND", "message": "No settlement in flight"})
    return attempt.to_dict()


# ---------------------------------------------
# Provider callbacks (safe to repeat; relayed by an IOU participant)
# ---------------------------------------------

@router.post("/settlements/callbacks/approval", response_model=CallbackAckResponse)
def approval_callback(
    body: ProviderCallbackRequest,
    user: CurrentUser = Depends(get_current_user),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    try:
        payment_id = _require_payment_id(body)
        coordinator.authorize(user.user_id, payment_id, body.iou_id)
        ack = coordinator.on_approval(payment_id, iou_id=body.iou_id)
    except IouError as e:
        raise_http_from_domain_error(e)
    return ack.to_dict()


@router.post("/settlements/callbacks/completion", response_model=CallbackAckResponse)
def completion_callback(
    body: ProviderCallbackRequest,
    user: CurrentUser = Depends(get_current_user),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    try:
        payment_id = _require_payment_id(body)
        coordinator.authorize(user.user_id, payment_id, body.iou_id)
        ack = coordinator.on_completion(
            payment_id,
            amount=body.amount,
            txid=body.txid,
            iou_id=body.iou_id,
        )
    except IouError as e:
        raise_http_from_domain_error(e)
    return ack.to_dict()


@router.post("/settlements/callbacks/cancel", response_model=CallbackAckResponse)
def cancel_callback(
    body: ProviderCallbackRequest,
    user: CurrentUser = Depends(get_current_user),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    try:
        if not body.provider_payment_id and not body.iou_id:
            raise ValidationError("provider_payment_id or iou_id is required")
        coordinator.authorize(user.user_id, body.provider_payment_id, body.iou_id)
        ack = coordinator.on_cancel(body.provider_payment_id, iou_id=body.iou_id)
    except IouError as e:
        raise_http_from_domain_error(e)
    return ack.to_dict()


@router.post("/settlements/callbacks/error", response_model=CallbackAckResponse)
def error_callback(
    body: ProviderCallbackRequest,
    user: CurrentUser = Depends(get_current_user),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    try:
        if not body.provider_payment_id and not body.iou_id:
            raise ValidationError("provider_payment_id or iou_id is required")
        coordinator.authorize(user.user_id, body.provider_payment_id, body.iou_id)
        ack = coordinator.on_error(body.provider_payment_id, error=body.error, iou_id=body.iou_id)
    except IouError as e:
        raise_http_from_domain_error(e)
    return ack.to_dict()


@router.post("/settlements/incomplete", response_model=CallbackAckResponse)
def incomplete_payment(
    body: IncompletePaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    logger.info("incomplete payment reported payment=%s user=%s", body.provider_payment_id, user.user_id)
    try:
        ack = coordinator.reconcile_payment(
            body.provider_payment_id.strip(),
            iou_id=body.iou_id,
            acting_user_id=user.user_id,
        )
    except IouError as e:
        raise_http_from_domain_error(e)
    return ack.to_dict()
