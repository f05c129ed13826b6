#main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from middleware import RequestContextMiddleware
from routes.auth import router as auth_router
from routes.health import router as health_router
from routes.ious import router as ious_router
from routes.settlements import router as settlements_router
from settings import settings, validate_env_settings

logger = logging.getLogger("ioupay")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.STORE_BACKEND != "postgres":
        yield
        return

    from db import close_pool, init_pool

    init_pool()
    try:
        yield
    finally:
        close_pool()


def create_app() -> FastAPI:
    logging.basicConfig(
        level=(settings.LOG_LEVEL or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    validate_env_settings()

    app = FastAPI(title="IOU Pay API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(ious_router)
    app.include_router(settlements_router)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()
