# scripts/expire_attempts_daemon.py
from __future__ import annotations

import logging
import os
import time

from app.providers.factory import get_provider
from app.settlements.coordinator import SettlementCoordinator
from deps.services import build_store
from settings import settings


logger = logging.getLogger("expire_attempts_daemon")


def _interval_seconds() -> int:
    raw = os.getenv("EXPIRE_INTERVAL_SECONDS", "60")
    try:
        value = int(raw)
    except ValueError:
        return 60
    return max(1, value)


def run_once(coordinator: SettlementCoordinator) -> int:
    expired = coordinator.expire_stale_attempts()
    if expired:
        logger.info("Expired %s stale settlement attempt(s)", expired)
    return expired


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if settings.STORE_BACKEND == "postgres":
        from db import init_pool

        init_pool()

    coordinator = SettlementCoordinator(
        build_store(),
        get_provider(),
        attempt_ttl_seconds=settings.SETTLEMENT_ATTEMPT_TTL_SECONDS,
    )
    interval = _interval_seconds()
    logger.info(
        "Expiry daemon starting; interval=%ss ttl=%ss",
        interval,
        settings.SETTLEMENT_ATTEMPT_TTL_SECONDS,
    )

    while True:
        try:
            run_once(coordinator)
        except KeyboardInterrupt:
            logger.info("Expiry daemon exiting")
            raise
        except Exception:
            logger.exception("Expiry daemon failed")
            raise
        time.sleep(interval)


if __name__ == "__main__":
    main()
