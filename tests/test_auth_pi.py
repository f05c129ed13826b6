from __future__ import annotations

from app.providers.base import ProviderUser, UnavailableProvider
from deps.services import get_payment_provider
from security import create_access_token, decode_token
from tests.conftest import _auth_headers


def test_pi_login_issues_token_and_registers_username(client, store, provider):
    provider.users["pi-token-1"] = ProviderUser(uid="uid-dana", username="Dana")

    r = client.post("/v1/auth/pi", json={"access_token": "pi-token-1"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["user_id"] == "uid-dana"
    assert body["token_type"] == "bearer"

    claims = decode_token(body["access_token"])
    assert claims["sub"] == "uid-dana"
    assert claims["username"] == "Dana"
    assert store.resolve_username("dana") == "uid-dana"


def test_pi_login_rejects_unknown_token(client):
    r = client.post("/v1/auth/pi", json={"access_token": "nope"})
    assert r.status_code == 401
    assert r.json()["detail"] == "INVALID_PROVIDER_TOKEN"


def test_pi_login_without_provider(app, client):
    app.dependency_overrides[get_payment_provider] = lambda: UnavailableProvider()
    r = client.post("/v1/auth/pi", json={"access_token": "anything"})
    assert r.status_code == 503


def test_bad_bearer_token(client):
    r = client.get("/v1/ious/whatever", headers=_auth_headers("not-a-jwt"))
    assert r.status_code == 401
    assert r.json()["detail"] == "UNAUTHORIZED"


def test_expired_token_is_rejected(client):
    token = create_access_token("uid-alice", minutes=-1)
    r = client.get("/v1/ious/whatever", headers=_auth_headers(token))
    assert r.status_code == 401
