# settings.py
from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_JWT_SECRET = "dev-secret-change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: Literal["dev", "test", "staging", "prod"] = "dev"
    LOG_LEVEL: str = "INFO"

    # -----------------------
    # Store
    # -----------------------
    STORE_BACKEND: Literal["memory", "postgres"] = "memory"
    DATABASE_URL: str = Field(default="")
    DB_POOL_MIN: int = 1
    DB_POOL_MAX: int = 10

    # -----------------------
    # JWT
    # -----------------------
    JWT_SECRET: str = Field(default=DEV_JWT_SECRET, min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60)

    # -----------------------
    # Payment provider
    # -----------------------
    # "pi" | "mock" | "none"
    PAYMENT_PROVIDER: str = "mock"
    PI_API_BASE_URL: str = "https://api.minepi.com"
    PI_API_KEY: str = ""
    PI_HTTP_TIMEOUT_S: float = 20.0
    PI_SANDBOX: bool = True

    # -----------------------
    # Settlement
    # -----------------------
    # initiated attempts older than this are expired so a new one may begin
    SETTLEMENT_ATTEMPT_TTL_SECONDS: int = Field(default=900, ge=1)


settings = Settings()


def validate_env_settings() -> None:
    """
    Fail fast outside dev/test when required configuration is missing.
    """
    env = (settings.ENV or "dev").strip().lower()
    if env in ("dev", "test"):
        return

    missing: list[str] = []
    if settings.STORE_BACKEND == "postgres" and not (settings.DATABASE_URL or "").strip():
        missing.append("DATABASE_URL")
    if not settings.JWT_SECRET or settings.JWT_SECRET == DEV_JWT_SECRET:
        missing.append("JWT_SECRET")
    if (settings.PAYMENT_PROVIDER or "").strip().lower() == "pi" and not (settings.PI_API_KEY or "").strip():
        missing.append("PI_API_KEY")

    if missing:
        raise RuntimeError(f"Missing required settings for ENV={env}: {', '.join(missing)}")
