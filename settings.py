# settings.py
from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: Literal["dev", "test", "staging", "prod"] = "dev"
    LOG_LEVEL: str = "INFO"

    # -----------------------
    # DB
    # -----------------------
    DATABASE_URL: str = Field(default="")
    DB_POOL_MIN: int = 1
    DB_POOL_MAX: int = 10
    DB_CONNECT_TIMEOUT_S: int = 5
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # -----------------------
    # Escrow engine
    # -----------------------
    ESCROW_STORE: Literal["memory", "postgres"] = "memory"
    ESCROW_LOCK_TIMEOUT_S: float = 2.0
    ESCROW_LOCK_RETRIES: int = 3
    ESCROW_LOCK_BACKOFF_S: float = 0.05

    # Rates are percents (10 == 10%). Captured per operation, never read mid-operation.
    PLATFORM_FEE_PERCENT: Decimal = Decimal("10")
    RESERVE_PERCENT: Decimal = Decimal("1.5")
    REFERRAL_OVERRIDE_PERCENT: Decimal = Decimal("5")
    DEFAULT_COMMISSION_PERCENT: Decimal = Decimal("25")
    COMMISSION_TIER_RATES: str = "tier1:25,tier2:27,tier3:30"
    DEPOSIT_PERCENT: Decimal = Decimal("43")
    REFUND_MULTIPLIER: Decimal = Decimal("1.10")

    # -----------------------
    # Notifications (best effort)
    # -----------------------
    NOTIFY_WEBHOOK_URL: str = ""
    NOTIFY_HTTP_TIMEOUT_S: float = 5.0

    # -----------------------
    # JWT
    # -----------------------
    JWT_SECRET: str = Field(default="dev-secret-change-me", min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60)


settings = Settings()


def _is_strict_env() -> bool:
    return (settings.ENV or "").strip().lower() in {"staging", "prod"}


def validate_env_settings() -> None:
    """
    Fail closed in staging/prod when required config is missing or the
    configured rates cannot produce a valid split.
    """
    problems: list[str] = []

    fixed_fees = (
        Decimal(settings.PLATFORM_FEE_PERCENT)
        + Decimal(settings.RESERVE_PERCENT)
        + Decimal(settings.REFERRAL_OVERRIDE_PERCENT)
    )
    if fixed_fees < 0 or fixed_fees > 100:
        problems.append("PLATFORM_FEE_PERCENT+RESERVE_PERCENT+REFERRAL_OVERRIDE_PERCENT")
    if Decimal(settings.REFUND_MULTIPLIER) < 1:
        problems.append("REFUND_MULTIPLIER")
    if not (0 <= Decimal(settings.DEPOSIT_PERCENT) <= 100):
        problems.append("DEPOSIT_PERCENT")
    if settings.ESCROW_LOCK_RETRIES < 1:
        problems.append("ESCROW_LOCK_RETRIES")

    if _is_strict_env():
        if not (settings.DATABASE_URL or "").strip():
            problems.append("DATABASE_URL")
        if settings.ESCROW_STORE != "postgres":
            problems.append("ESCROW_STORE")
        if settings.JWT_SECRET == "dev-secret-change-me" or len(settings.JWT_SECRET) < 32:
            problems.append("JWT_SECRET")

    if problems:
        raise RuntimeError("Invalid or missing settings: " + ", ".join(problems))
