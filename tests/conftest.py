# tests/conftest.py

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

from app.ious import service
from app.providers.mock import MockProvider
from app.settlements.coordinator import SettlementCoordinator
from app.store.memory import MemoryStore
from deps.services import get_payment_provider, get_store
from main import create_app
from security import create_access_token
from services.metrics import reset_metrics


@dataclass
class AuthedUser:
    user_id: str
    username: str
    token: str


def _user(user_id: str, username: str) -> AuthedUser:
    return AuthedUser(user_id=user_id, username=username, token=create_access_token(user_id, username=username))


def _auth_headers(token: str, request_id: Optional[str] = None) -> Dict[str, str]:
    h = {"Authorization": f"Bearer {token}"}
    if request_id:
        h["X-Request-Id"] = request_id
    return h


# ---------------------------
# Core fixtures
# ---------------------------

@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def coordinator(store, provider) -> SettlementCoordinator:
    return SettlementCoordinator(store, provider)


@pytest.fixture
def alice(store) -> AuthedUser:
    user = _user("uid-alice", "alice")
    store.upsert_user(user.user_id, user.username)
    return user


@pytest.fixture
def bob(store) -> AuthedUser:
    user = _user("uid-bob", "bob")
    store.upsert_user(user.user_id, user.username)
    return user


@pytest.fixture
def carol(store) -> AuthedUser:
    user = _user("uid-carol", "carol")
    store.upsert_user(user.user_id, user.username)
    return user


@pytest.fixture
def iou(store, alice, bob):
    """Alice owes Bob 10."""
    return service.create(
        store,
        owner_id=alice.user_id,
        direction="outgoing",
        counterparty="bob",
        amount=Decimal("10"),
        note="dinner",
    )


# ---------------------------
# HTTP client
# ---------------------------

@pytest.fixture
def app(store, provider):
    application = create_app()
    application.dependency_overrides[get_store] = lambda: store
    application.dependency_overrides[get_payment_provider] = lambda: provider
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(app, raise_server_exceptions=False)
