# app/providers/pi_network.py
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from app.errors import ProviderError
from app.providers.base import ProviderPayment, ProviderResult, ProviderUser
from app.providers.http import HttpClient, HttpResponse, is_retryable_http
from app.settlements.model import SettlementAttempt

logger = logging.getLogger("ioupay.pi")

DEFAULT_BASE_URL = "https://api.minepi.com"


def _response_payload(resp: HttpResponse, *, stage: str) -> dict[str, Any]:
    return {"http_status": resp.status_code, "stage": stage, "body": resp.json}


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class PiNetworkProvider:
    """
    Pi Platform API adapter.

    User-to-app payments are created by the Pi SDK in the client, so
    initiate() does not call the API: the payment identifier arrives with
    the approval callback. Approval and completion are the server-side
    calls the platform requires before it releases the payment.
    """

    name = "pi"
    available = True

    def __init__(self, *, api_key: str, base_url: str = DEFAULT_BASE_URL, timeout_s: float = 20.0, http: HttpClient | None = None):
        self.api_key = (api_key or "").strip()
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.http = http or HttpClient(timeout_s=timeout_s)

    def _server_headers(self) -> dict[str, str]:
        return {"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"}

    def _result(self, resp: HttpResponse, provider_payment_id: str, *, stage: str) -> ProviderResult:
        if resp.ok:
            return ProviderResult(ok=True, provider_payment_id=provider_payment_id, response=_response_payload(resp, stage=stage))

        error = None
        if resp.json:
            error = resp.json.get("error") or resp.json.get("error_message")
        logger.warning("pi %s failed payment=%s status=%s error=%s", stage, provider_payment_id, resp.status_code, error)
        return ProviderResult(
            ok=False,
            provider_payment_id=provider_payment_id,
            response=_response_payload(resp, stage=stage),
            error=error or f"HTTP {resp.status_code}",
            retryable=is_retryable_http(resp.status_code),
        )

    def initiate(self, attempt: SettlementAttempt) -> ProviderResult:
        return ProviderResult(ok=True, response={"client_side": True, "amount": str(attempt.amount), "memo": attempt.memo})

    def _post_action(self, provider_payment_id: str, action: str, body: dict[str, Any]) -> ProviderResult:
        url = f"{self.base_url}/v2/payments/{provider_payment_id}/{action}"
        try:
            resp = self.http.post(url, headers=self._server_headers(), json_body=body)
        except httpx.HTTPError as exc:
            logger.warning("pi %s transport error payment=%s err=%s", action, provider_payment_id, exc)
            return ProviderResult(ok=False, provider_payment_id=provider_payment_id, error=f"TRANSPORT_ERROR: {exc}", retryable=True)
        return self._result(resp, provider_payment_id, stage=action)

    def approve(self, provider_payment_id: str) -> ProviderResult:
        return self._post_action(provider_payment_id, "approve", {})

    def complete(self, provider_payment_id: str, txid: Optional[str]) -> ProviderResult:
        return self._post_action(provider_payment_id, "complete", {"txid": txid or ""})

    def get_payment(self, provider_payment_id: str) -> Optional[ProviderPayment]:
        url = f"{self.base_url}/v2/payments/{provider_payment_id}"
        try:
            resp = self.http.get(url, headers=self._server_headers())
        except httpx.HTTPError as exc:
            raise ProviderError(f"Pi payment lookup failed: {exc}") from exc
        if resp.status_code == 404:
            return None
        if not resp.ok or not resp.json:
            raise ProviderError(f"Pi payment lookup failed: HTTP {resp.status_code}")

        body = resp.json
        status = body.get("status") or {}
        transaction = body.get("transaction") or {}
        metadata = body.get("metadata") or {}
        return ProviderPayment(
            provider_payment_id=str(body.get("identifier") or provider_payment_id),
            amount=_to_decimal(body.get("amount")),
            memo=body.get("memo"),
            iou_id=metadata.get("iou_id"),
            developer_approved=bool(status.get("developer_approved")),
            transaction_verified=bool(status.get("transaction_verified")),
            developer_completed=bool(status.get("developer_completed")),
            cancelled=bool(status.get("cancelled") or status.get("user_cancelled")),
            txid=transaction.get("txid"),
        )

    def verify_user(self, access_token: str) -> Optional[ProviderUser]:
        try:
            resp = self.http.get(
                f"{self.base_url}/v2/me",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Pi identity check failed: {exc}") from exc
        if resp.status_code in (401, 403):
            logger.info("pi /me rejected access token status=%s", resp.status_code)
            return None
        if not resp.ok or not resp.json or not resp.json.get("uid"):
            raise ProviderError(f"Pi identity check failed: HTTP {resp.status_code}")
        return ProviderUser(uid=str(resp.json["uid"]), username=resp.json.get("username"))
