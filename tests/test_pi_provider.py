from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from app.errors import ProviderError
from app.providers.http import HttpResponse
from app.providers.pi_network import PiNetworkProvider
from app.settlements.model import SettlementAttempt


class _FakeHttp:
    def __init__(self, responses=None, error: Exception | None = None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    def _next(self, method, url, headers, body=None):
        self.calls.append((method, url, headers, body))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    def post(self, url, *, headers, json_body=None, debug=False):
        return self._next("POST", url, headers, json_body)

    def get(self, url, *, headers, debug=False):
        return self._next("GET", url, headers)


def _resp(status: int, payload: dict | None = None) -> HttpResponse:
    return HttpResponse(status_code=status, json=payload, text="")


def _provider(http) -> PiNetworkProvider:
    return PiNetworkProvider(api_key="server-key", base_url="https://pi.test/", http=http)


def test_initiate_is_client_side():
    http = _FakeHttp()
    attempt = SettlementAttempt(iou_id="iou-1", amount=Decimal("3.5"), memo="IOU payment to bob")

    result = _provider(http).initiate(attempt)
    assert result.ok
    assert result.provider_payment_id is None
    assert http.calls == []


def test_approve_posts_with_server_key():
    http = _FakeHttp([_resp(200, {"identifier": "p1"})])

    result = _provider(http).approve("p1")
    assert result.ok
    method, url, headers, body = http.calls[0]
    assert method == "POST"
    assert url == "https://pi.test/v2/payments/p1/approve"
    assert headers["Authorization"] == "Key server-key"


def test_complete_sends_txid():
    http = _FakeHttp([_resp(200, {})])
    _provider(http).complete("p1", "tx-7")
    _, url, _, body = http.calls[0]
    assert url.endswith("/v2/payments/p1/complete")
    assert body == {"txid": "tx-7"}


def test_approve_failure_is_classified():
    http = _FakeHttp([_resp(503, {"error": "maintenance"})])
    result = _provider(http).approve("p1")
    assert not result.ok
    assert result.error == "maintenance"
    assert result.retryable is True

    http = _FakeHttp([_resp(400, None)])
    result = _provider(http).approve("p1")
    assert result.error == "HTTP 400"
    assert result.retryable is False


def test_transport_error_becomes_failed_result():
    http = _FakeHttp(error=httpx.ConnectError("boom"))
    result = _provider(http).complete("p1", None)
    assert not result.ok
    assert result.retryable is True


def test_get_payment_parses_status():
    http = _FakeHttp([
        _resp(
            200,
            {
                "identifier": "p1",
                "amount": 3.5,
                "memo": "IOU payment to bob",
                "metadata": {"iou_id": "iou-1"},
                "status": {
                    "developer_approved": True,
                    "transaction_verified": True,
                    "developer_completed": False,
                    "cancelled": False,
                    "user_cancelled": False,
                },
                "transaction": {"txid": "tx-9"},
            },
        )
    ])

    payment = _provider(http).get_payment("p1")
    assert payment.amount == Decimal("3.5")
    assert payment.iou_id == "iou-1"
    assert payment.developer_approved and payment.transaction_verified
    assert not payment.developer_completed
    assert payment.txid == "tx-9"


def test_get_payment_missing_and_failure():
    assert _provider(_FakeHttp([_resp(404, {})])).get_payment("p1") is None
    with pytest.raises(ProviderError):
        _provider(_FakeHttp([_resp(500, {})])).get_payment("p1")


def test_verify_user():
    http = _FakeHttp([_resp(200, {"uid": "uid-1", "username": "dana"})])
    user = _provider(http).verify_user("user-token")
    assert user.uid == "uid-1"
    assert user.username == "dana"
    assert http.calls[0][1] == "https://pi.test/v2/me"
    assert http.calls[0][2]["Authorization"] == "Bearer user-token"

    assert _provider(_FakeHttp([_resp(401, {})])).verify_user("bad") is None
    with pytest.raises(ProviderError):
        _provider(_FakeHttp(error=httpx.ReadTimeout("slow"))).verify_user("t")
