from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response

from app.providers.factory import get_provider
from services.metrics import render_prometheus
from settings import settings

router = APIRouter(tags=["health"])


def _check_db() -> tuple[bool, str | None]:
    if settings.STORE_BACKEND != "postgres":
        return True, None
    try:
        from db import get_conn

        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, f"{type(exc).__name__}: {exc}"


@router.get("/healthz")
def healthz():
    db_ok, db_error = _check_db()
    provider = get_provider()
    return {
        "ok": db_ok,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "env": settings.ENV,
        "store": settings.STORE_BACKEND,
        "db_ok": db_ok,
        "db_error": db_error,
        "payment_provider": getattr(provider, "name", None),
        "payments_available": bool(getattr(provider, "available", False)),
    }


@router.get("/metrics", tags=["metrics"])
def metrics():
    body = render_prometheus()
    return Response(content=body, media_type="text/plain; version=0.0.4")
