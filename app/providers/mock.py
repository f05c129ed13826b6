# app/providers/mock.py
from __future__ import annotations

import uuid
from dataclasses import replace
from threading import Lock
from typing import Optional

from app.providers.base import ProviderPayment, ProviderResult, ProviderUser
from app.settlements.model import SettlementAttempt


class MockProvider:
    """
    Test/dev payment provider.

    - initiate() hands out `mock-<uuid>` ids immediately (set `assign_ids=False`
      to mimic a provider whose id only arrives with the approval callback).
    - succeed=False makes every server-side call fail with a 504-style response.
    - `payments` mirrors what the provider believes, for incomplete-payment recovery.
    """

    name = "mock"
    available = True

    def __init__(self, *, succeed: bool = True, assign_ids: bool = True):
        self.succeed = succeed
        self.assign_ids = assign_ids
        self.calls: list[tuple[str, Optional[str]]] = []
        self.payments: dict[str, ProviderPayment] = {}
        self.users: dict[str, ProviderUser] = {}
        self._lock = Lock()

    def _record(self, op: str, ref: Optional[str]) -> None:
        with self._lock:
            self.calls.append((op, ref))

    def _failure(self, provider_payment_id: Optional[str]) -> ProviderResult:
        return ProviderResult(
            ok=False,
            provider_payment_id=provider_payment_id,
            response={"http_status": 504, "mock": True},
            error="Gateway timeout",
            retryable=True,
        )

    def initiate(self, attempt: SettlementAttempt) -> ProviderResult:
        self._record("initiate", attempt.id)
        if not self.succeed:
            return self._failure(None)
        if not self.assign_ids:
            return ProviderResult(ok=True, response={"http_status": 202, "mock": True})

        payment_id = f"mock-{uuid.uuid4()}"
        self.payments[payment_id] = ProviderPayment(
            provider_payment_id=payment_id,
            amount=attempt.amount,
            memo=attempt.memo,
            iou_id=attempt.iou_id,
        )
        return ProviderResult(ok=True, provider_payment_id=payment_id, response={"http_status": 201, "mock": True})

    def approve(self, provider_payment_id: str) -> ProviderResult:
        self._record("approve", provider_payment_id)
        if not self.succeed:
            return self._failure(provider_payment_id)
        self._update(provider_payment_id, developer_approved=True)
        return ProviderResult(ok=True, provider_payment_id=provider_payment_id, response={"http_status": 200, "mock": True})

    def complete(self, provider_payment_id: str, txid: Optional[str]) -> ProviderResult:
        self._record("complete", provider_payment_id)
        if not self.succeed:
            return self._failure(provider_payment_id)
        self._update(provider_payment_id, developer_completed=True, transaction_verified=True, txid=txid)
        return ProviderResult(ok=True, provider_payment_id=provider_payment_id, response={"http_status": 200, "mock": True})

    def get_payment(self, provider_payment_id: str) -> Optional[ProviderPayment]:
        self._record("get_payment", provider_payment_id)
        return self.payments.get(provider_payment_id)

    def verify_user(self, access_token: str) -> Optional[ProviderUser]:
        self._record("verify_user", None)
        return self.users.get(access_token)

    def _update(self, provider_payment_id: str, **changes) -> None:
        current = self.payments.get(provider_payment_id) or ProviderPayment(provider_payment_id=provider_payment_id)
        self.payments[provider_payment_id] = replace(current, **changes)
