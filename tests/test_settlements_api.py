from __future__ import annotations

from decimal import Decimal

from app.providers.base import UnavailableProvider
from deps.services import get_payment_provider
from tests.conftest import _auth_headers


def _begin(client, token, iou_id):
    return client.post(f"/v1/ious/{iou_id}/settlements", headers=_auth_headers(token))


def _callback(client, token, kind, **body):
    return client.post(f"/v1/settlements/callbacks/{kind}", json=body, headers=_auth_headers(token))


def test_full_settlement_flow(client, iou, alice):
    r = _begin(client, alice.token, iou.id)
    assert r.status_code == 201, r.text
    attempt = r.json()
    assert attempt["phase"] == "initiated"
    assert Decimal(attempt["amount"]) == Decimal("10")
    pid = attempt["provider_payment_id"]

    active = client.get(f"/v1/ious/{iou.id}/settlements/active", headers=_auth_headers(alice.token))
    assert active.status_code == 200
    assert active.json()["id"] == attempt["id"]

    r = _callback(client, alice.token, "approval", provider_payment_id=pid)
    assert r.status_code == 200, r.text
    assert r.json()["phase"] == "approved"
    assert r.json()["applied"] is True

    r = _callback(client, alice.token, "completion", provider_payment_id=pid, amount="10", txid="tx-1")
    assert r.status_code == 200, r.text
    assert r.json()["phase"] == "completed"
    assert r.json()["iou_status"] == "paid"

    record = client.get(f"/v1/ious/{iou.id}", headers=_auth_headers(alice.token)).json()
    assert record["status"] == "paid"
    assert record["paid_at"] is not None

    none_active = client.get(f"/v1/ious/{iou.id}/settlements/active", headers=_auth_headers(alice.token))
    assert none_active.status_code == 404

    dup = _callback(client, alice.token, "completion", provider_payment_id=pid, amount="10", txid="tx-1")
    assert dup.status_code == 200
    assert dup.json()["applied"] is False


def test_only_debtor_can_begin(client, iou, bob):
    r = _begin(client, bob.token, iou.id)
    assert r.status_code == 403


def test_second_begin_conflicts(client, iou, alice):
    assert _begin(client, alice.token, iou.id).status_code == 201
    r = _begin(client, alice.token, iou.id)
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "CONFLICT"


def test_begin_on_cancelled_iou(client, iou, alice, bob):
    client.post(f"/v1/ious/{iou.id}/reject", headers=_auth_headers(bob.token))
    r = _begin(client, alice.token, iou.id)
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "ILLEGAL_TRANSITION"


def test_reject_blocked_during_settlement(client, iou, alice, bob):
    _begin(client, alice.token, iou.id)
    r = client.post(f"/v1/ious/{iou.id}/reject", headers=_auth_headers(bob.token))
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "CONFLICT"


def test_completion_before_approval(client, iou, alice):
    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]
    r = _callback(client, alice.token, "completion", provider_payment_id=pid, amount="10")
    assert r.status_code == 409


def test_completion_amount_mismatch(client, store, iou, alice):
    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]
    _callback(client, alice.token, "approval", provider_payment_id=pid)

    r = _callback(client, alice.token, "completion", provider_payment_id=pid, amount="8")
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "AMOUNT_MISMATCH"
    assert store.fetch_by_id(iou.id).status == "pending"


def test_callbacks_require_identifiers(client, alice):
    r = _callback(client, alice.token, "approval")
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "VALIDATION_ERROR"

    r = _callback(client, alice.token, "cancel")
    assert r.status_code == 422


def test_cancel_callback(client, iou, alice):
    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]

    r = _callback(client, alice.token, "cancel", provider_payment_id=pid)
    assert r.status_code == 200
    assert r.json()["phase"] == "cancelled"
    assert r.json()["iou_status"] == "pending"

    assert _begin(client, alice.token, iou.id).status_code == 201


def test_error_callback(client, iou, alice):
    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]

    r = _callback(client, alice.token, "error", provider_payment_id=pid, error="user_timeout")
    assert r.status_code == 200
    assert r.json()["phase"] == "errored"
    assert r.json()["error"] == "user_timeout"


def test_unknown_payment_callback(client, alice):
    r = _callback(client, alice.token, "approval", provider_payment_id="ghost")
    assert r.status_code == 404


def test_provider_unavailable(app, client, iou, alice, store):
    app.dependency_overrides[get_payment_provider] = lambda: UnavailableProvider()

    r = _begin(client, alice.token, iou.id)
    assert r.status_code == 503
    assert r.json()["detail"]["error"] == "PROVIDER_UNAVAILABLE"
    assert store.fetch_active_attempt(iou.id) is None


def test_incomplete_payment_recovery(client, provider, iou, alice):
    from dataclasses import replace

    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]
    provider.payments[pid] = replace(provider.payments[pid], developer_approved=True, transaction_verified=True, txid="tx-9")

    r = client.post(
        "/v1/settlements/incomplete",
        json={"provider_payment_id": pid},
        headers=_auth_headers(alice.token),
    )
    assert r.status_code == 200, r.text
    assert r.json()["iou_status"] == "paid"


def test_settlement_routes_require_auth(client, iou):
    assert client.post(f"/v1/ious/{iou.id}/settlements").status_code == 401
    assert client.post("/v1/settlements/callbacks/approval", json={"provider_payment_id": "x"}).status_code == 401


def test_non_participant_cannot_relay_callbacks(client, store, iou, alice, carol):
    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]

    for kind in ("error", "cancel"):
        r = _callback(client, carol.token, kind, iou_id=iou.id)
        assert r.status_code == 403, r.text
        assert r.json()["detail"]["error"] == "NOT_AUTHORIZED"
    for kind in ("approval", "completion", "cancel", "error"):
        r = _callback(client, carol.token, kind, provider_payment_id=pid, amount="10")
        assert r.status_code == 403, r.text

    r = client.post(
        "/v1/settlements/incomplete",
        json={"provider_payment_id": pid},
        headers=_auth_headers(carol.token),
    )
    assert r.status_code == 403

    attempt = store.fetch_active_attempt(iou.id)
    assert attempt.phase == "initiated"
    assert attempt.last_error is None


def test_counterparty_can_relay_callbacks(client, iou, alice, bob):
    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]
    r = _callback(client, bob.token, "cancel", provider_payment_id=pid)
    assert r.status_code == 200
    assert r.json()["phase"] == "cancelled"


def test_completion_without_amount_settles_from_provider_record(client, iou, alice):
    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]
    _callback(client, alice.token, "approval", provider_payment_id=pid)

    r = _callback(client, alice.token, "completion", provider_payment_id=pid, txid="tx-1")
    assert r.status_code == 200, r.text
    assert r.json()["iou_status"] == "paid"


def test_completion_provider_failure_is_bad_gateway(client, store, provider, iou, alice):
    pid = _begin(client, alice.token, iou.id).json()["provider_payment_id"]
    _callback(client, alice.token, "approval", provider_payment_id=pid)
    provider.succeed = False

    r = _callback(client, alice.token, "completion", provider_payment_id=pid, amount="10")
    assert r.status_code == 502
    assert r.json()["detail"]["error"] == "PROVIDER_ERROR"
    assert store.fetch_by_id(iou.id).status == "pending"
    assert store.fetch_attempt_by_payment_id(pid).phase == "approved"
