# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol

from app.errors import ProviderUnavailableError
from app.settlements.model import SettlementAttempt


@dataclass(frozen=True)
class ProviderResult:
    ok: bool
    provider_payment_id: Optional[str] = None
    response: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    # None => not classified (no HTTP status to go by)
    retryable: Optional[bool] = None


@dataclass(frozen=True)
class ProviderPayment:
    """
    Provider-side view of a payment, used to recover unfinished settlements.
    """

    provider_payment_id: str
    amount: Optional[Decimal] = None
    memo: Optional[str] = None
    iou_id: Optional[str] = None
    developer_approved: bool = False
    transaction_verified: bool = False
    developer_completed: bool = False
    cancelled: bool = False
    txid: Optional[str] = None


@dataclass(frozen=True)
class ProviderUser:
    uid: str
    username: Optional[str] = None


class PaymentProvider(Protocol):
    name: str
    available: bool

    def initiate(self, attempt: SettlementAttempt) -> ProviderResult: ...
    def approve(self, provider_payment_id: str) -> ProviderResult: ...
    def complete(self, provider_payment_id: str, txid: Optional[str]) -> ProviderResult: ...
    def get_payment(self, provider_payment_id: str) -> Optional[ProviderPayment]: ...
    def verify_user(self, access_token: str) -> Optional[ProviderUser]: ...


class UnavailableProvider:
    """
    Explicit "no payment capability" variant.

    Every call raises ProviderUnavailableError; the coordinator checks
    `available` before starting a settlement so no attempt is left behind.
    """

    name = "none"
    available = False

    def __init__(self, reason: str = "Payment provider is not configured"):
        self.reason = reason

    def _unavailable(self):
        raise ProviderUnavailableError(self.reason)

    def initiate(self, attempt: SettlementAttempt) -> ProviderResult:
        self._unavailable()

    def approve(self, provider_payment_id: str) -> ProviderResult:
        self._unavailable()

    def complete(self, provider_payment_id: str, txid: Optional[str]) -> ProviderResult:
        self._unavailable()

    def get_payment(self, provider_payment_id: str) -> Optional[ProviderPayment]:
        self._unavailable()

    def verify_user(self, access_token: str) -> Optional[ProviderUser]:
        self._unavailable()
