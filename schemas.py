# schemas.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

Direction = Literal["incoming", "outgoing"]
IouStatus = Literal["pending", "accepted", "paid", "cancelled"]
Phase = Literal["initiated", "approved", "completed", "cancelled", "errored"]


# -------- AUTH --------
class PiAuthRequest(BaseModel):
    access_token: str = Field(min_length=1)


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    username: Optional[str] = None


# -------- IOUS --------
class IouCreateRequest(BaseModel):
    direction: Direction
    counterparty: str = Field(min_length=1, max_length=200)
    amount: Decimal = Field(gt=0, allow_inf_nan=False)
    note: Optional[str] = Field(default=None, max_length=500)
    due_date: Optional[date] = None


class IouResponse(BaseModel):
    id: str
    owner_id: str
    direction: Direction
    counterparty: str
    amount: Decimal
    note: Optional[str] = None
    due_date: Optional[date] = None
    status: IouStatus
    created_at: datetime
    accepted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


# -------- SETTLEMENTS --------
class SettlementAttemptResponse(BaseModel):
    id: str
    iou_id: str
    provider_payment_id: Optional[str] = None
    phase: Phase
    amount: Decimal
    memo: str
    txid: Optional[str] = None
    last_error: Optional[str] = None


class ProviderCallbackRequest(BaseModel):
    provider_payment_id: Optional[str] = Field(default=None, max_length=200)
    iou_id: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, allow_inf_nan=False)
    memo: Optional[str] = None
    txid: Optional[str] = None
    error: Optional[str] = Field(default=None, max_length=1000)


class IncompletePaymentRequest(BaseModel):
    provider_payment_id: str = Field(min_length=1, max_length=200)
    iou_id: Optional[str] = None


class CallbackAckResponse(BaseModel):
    ok: bool = True
    provider_payment_id: Optional[str] = None
    phase: Phase
    applied: bool
    iou_status: Optional[IouStatus] = None
    error: Optional[str] = None
