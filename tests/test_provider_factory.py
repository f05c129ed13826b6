from __future__ import annotations

import pytest

from app.providers.factory import get_provider, reset_provider_cache
from app.providers.mock import MockProvider
from app.providers.pi_network import PiNetworkProvider
from settings import settings


@pytest.fixture(autouse=True)
def _fresh_cache():
    reset_provider_cache()
    yield
    reset_provider_cache()


def test_mock_provider_is_cached():
    first = get_provider("mock")
    assert isinstance(first, MockProvider)
    assert get_provider("MOCK") is first


def test_pi_without_key_is_unavailable(monkeypatch):
    monkeypatch.setattr(settings, "PI_API_KEY", "", raising=False)
    provider = get_provider("pi")
    assert provider.available is False
    assert provider.name == "none"


def test_pi_with_key(monkeypatch):
    monkeypatch.setattr(settings, "PI_API_KEY", "server-key", raising=False)
    monkeypatch.setattr(settings, "PI_API_BASE_URL", "https://pi.test", raising=False)
    provider = get_provider("pi")
    assert isinstance(provider, PiNetworkProvider)
    assert provider.base_url == "https://pi.test"


@pytest.mark.parametrize("name", ["", "none", "stripe"])
def test_unknown_provider_is_unavailable(name):
    assert get_provider(name).available is False


def test_default_comes_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_PROVIDER", "mock", raising=False)
    assert get_provider().name == "mock"
