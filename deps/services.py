# deps/services.py
from __future__ import annotations

from fastapi import Depends

from app.providers.factory import get_provider
from app.settlements.coordinator import SettlementCoordinator
from app.store.base import IouStore
from settings import settings

_store: IouStore | None = None


def build_store() -> IouStore:
    if settings.STORE_BACKEND == "postgres":
        from app.store.postgres import PostgresStore
        return PostgresStore()
    from app.store.memory import MemoryStore
    return MemoryStore()


def get_store() -> IouStore:
    global _store
    if _store is None:
        _store = build_store()
    return _store


def get_payment_provider():
    return get_provider()


def get_coordinator(
    store: IouStore = Depends(get_store),
    provider=Depends(get_payment_provider),
) -> SettlementCoordinator:
    return SettlementCoordinator(
        store,
        provider,
        attempt_ttl_seconds=settings.SETTLEMENT_ATTEMPT_TTL_SECONDS,
    )
