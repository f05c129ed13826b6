from __future__ import annotations

import logging

from tests.conftest import _auth_headers


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["ok"] is True
    assert body["store"] == "memory"
    assert body["db_ok"] is True


def test_request_id_added_when_missing(client):
    r = client.get("/healthz")
    assert r.headers.get("X-Request-Id")


def test_request_id_echoed_when_present(client):
    r = client.get("/healthz", headers={"X-Request-Id": "client-request-id"})
    assert r.headers.get("X-Request-Id") == "client-request-id"


def test_request_log_masks_authorization(client, alice, caplog):
    caplog.set_level(logging.INFO, logger="ioupay.http")
    client.get("/healthz", headers=_auth_headers(alice.token))

    lines = [rec.getMessage() for rec in caplog.records if rec.name == "ioupay.http"]
    assert any("http_request" in line and "/healthz" in line for line in lines)
    assert all(alice.token not in line for line in lines)


def test_metrics_counts_transitions(client, alice, bob):
    created = client.post(
        "/v1/ious",
        json={"direction": "outgoing", "counterparty": "bob", "amount": 4},
        headers=_auth_headers(alice.token),
    ).json()
    client.post(f"/v1/ious/{created['id']}/accept", headers=_auth_headers(bob.token))

    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert 'iou_transitions_total{status="accepted"} 1' in r.text
    assert "http_requests_total" in r.text
