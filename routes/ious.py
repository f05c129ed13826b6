# routes/ious.py
from fastapi import APIRouter, Depends

from app.errors import IouError
from app.ious import service
from app.store.base import IouStore
from deps.auth import CurrentUser, get_current_user
from deps.services import get_store
from schemas import IouCreateRequest, IouResponse
from services.domain_errors import raise_http_from_domain_error

router = APIRouter(prefix="/v1/ious", tags=["ious"])


@router.post("", status_code=201, response_model=IouResponse)
def create_iou(
    body: IouCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    store: IouStore = Depends(get_store),
):
    try:
        record = service.create(
            store,
            owner_id=user.user_id,
            direction=body.direction,
            counterparty=body.counterparty,
            amount=body.amount,
            note=body.note,
            due_date=body.due_date,
        )
    except IouError as e:
        raise_http_from_domain_error(e)
    return record.to_dict()


@router.get("/{iou_id}", response_model=IouResponse)
def get_iou(
    iou_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: IouStore = Depends(get_store),
):
    try:
        record = service.get_for_user(store, iou_id, user.user_id)
    except IouError as e:
        raise_http_from_domain_error(e)
    return record.to_dict()


@router.post("/{iou_id}/accept", response_model=IouResponse)
def accept_iou(
    iou_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: IouStore = Depends(get_store),
):
    try:
        record = service.accept(store, iou_id, user.user_id)
    except IouError as e:
        raise_http_from_domain_error(e)
    return record.to_dict()


@router.post("/{iou_id}/reject", response_model=IouResponse)
def reject_iou(
    iou_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: IouStore = Depends(get_store),
):
    try:
        record = service.reject(store, iou_id, user.user_id)
    except IouError as e:
        raise_http_from_domain_error(e)
    return record.to_dict()
