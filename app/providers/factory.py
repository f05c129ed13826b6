# app/providers/factory.py
from __future__ import annotations

from typing import Any, Dict

from app.providers.base import UnavailableProvider
from settings import settings

_PROVIDER_CACHE: Dict[str, Any] = {}


def _normalize(name: str | None) -> str:
    return (name or "").strip().lower().replace("-", "_").replace(" ", "_")


def get_provider(name: str | None = None):
    """
    Resolve the configured payment capability.

    Unknown, empty or misconfigured providers yield UnavailableProvider
    rather than None so callers always get something to check.
    """
    key = _normalize(name if name is not None else settings.PAYMENT_PROVIDER)

    if key in _PROVIDER_CACHE:
        return _PROVIDER_CACHE[key]

    if key == "mock":
        from app.providers.mock import MockProvider
        provider = MockProvider()

    elif key == "pi":
        api_key = (settings.PI_API_KEY or "").strip()
        if not api_key:
            return UnavailableProvider("PI_API_KEY is not configured")
        from app.providers.pi_network import PiNetworkProvider
        provider = PiNetworkProvider(
            api_key=api_key,
            base_url=settings.PI_API_BASE_URL,
            timeout_s=settings.PI_HTTP_TIMEOUT_S,
        )

    else:
        return UnavailableProvider(f"Payment provider '{key or 'none'}' is not available")

    _PROVIDER_CACHE[key] = provider
    return provider


def reset_provider_cache() -> None:
    _PROVIDER_CACHE.clear()
