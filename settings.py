from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal


WEAK_JWT_SECRETS = {"dev-secret-change-me", "change-me", "secret"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: Literal["dev", "staging", "prod"] = "dev"

    # -----------------------
    # DB
    # -----------------------
    DATABASE_URL: str = Field(default="")
    DB_POOL_MIN: int = 1
    DB_POOL_MAX: int = 10

    # -----------------------
    # JWT
    # -----------------------
    JWT_SECRET: str = Field(default="dev-secret-change-me", min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60)

    # Service-to-service token for reconciliation tooling
    INTERNAL_API_TOKEN: str = ""

    # -----------------------
    # Chapa transfers
    # -----------------------
    CHAPA_BASE_URL: str = "https://api.chapa.co"
    CHAPA_SECRET_KEY: str = ""
    CHAPA_TEST_SECRET_KEY: str = ""  # ignored in prod
    CHAPA_HTTP_TIMEOUT_S: float = 15.0
    CHAPA_TRANSFER_RETRY_DELAYS_MS: str = "500,1500"

    # Webhook secrets (CHAPA_ENCRYPTION_KEY is the shared fallback)
    CHAPA_TRANSFER_WEBHOOK_SECRET: str = ""
    CHAPA_TRANSFER_APPROVAL_SECRET: str = ""
    CHAPA_ENCRYPTION_KEY: str = ""
    CHAPA_VERIFY_WEBHOOK_TRANSFERS: bool = True

    # -----------------------
    # Payouts
    # -----------------------
    PAYOUTS_ENABLED: bool = True
    PAYOUT_DEFAULT_CURRENCY: str = "ETB"
    PAYOUT_PLATFORM_FEE_RATE: str = "0.01"

    # Sweep
    PAYOUT_SWEEP_INTERVAL_SECONDS: int = 900
    PAYOUT_SWEEP_BATCH_SIZE: int = 200


def chapa_secret_key(current: Settings | None = None) -> str:
    s = current or settings
    key = (s.CHAPA_SECRET_KEY or "").strip()
    if key:
        return key
    if s.ENV != "prod":
        return (s.CHAPA_TEST_SECRET_KEY or "").strip()
    return ""


def transfer_retry_delays_s(current: Settings | None = None) -> tuple[float, ...]:
    s = current or settings
    raw = s.CHAPA_TRANSFER_RETRY_DELAYS_MS or ""
    delays = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        delays.append(max(0, int(part)) / 1000.0)
    return tuple(delays)


def validate_env_settings() -> None:
    """
    Fail fast outside dev when anything money-moving is not configured.
    """
    if settings.ENV == "dev":
        return

    missing: list[str] = []
    if not (settings.DATABASE_URL or "").strip():
        missing.append("DATABASE_URL")
    if settings.JWT_SECRET in WEAK_JWT_SECRETS or len(settings.JWT_SECRET or "") < 32:
        missing.append("JWT_SECRET")
    if not chapa_secret_key():
        missing.append("CHAPA_SECRET_KEY")
    if not (settings.CHAPA_TRANSFER_WEBHOOK_SECRET or settings.CHAPA_ENCRYPTION_KEY):
        missing.append("CHAPA_TRANSFER_WEBHOOK_SECRET")
    if not (settings.CHAPA_TRANSFER_APPROVAL_SECRET or settings.CHAPA_ENCRYPTION_KEY):
        missing.append("CHAPA_TRANSFER_APPROVAL_SECRET")
    if not (settings.INTERNAL_API_TOKEN or "").strip():
        missing.append("INTERNAL_API_TOKEN")

    if missing:
        raise RuntimeError(f"Missing or weak settings for ENV={settings.ENV}: {', '.join(missing)}")


settings = Settings()
