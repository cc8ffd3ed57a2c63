# app/providers/config.py
from __future__ import annotations

from app.providers.chapa import ChapaTransferClient
from settings import Settings, chapa_secret_key, settings, transfer_retry_delays_s


def build_transfer_client(current: Settings | None = None) -> ChapaTransferClient:
    s = current or settings
    return ChapaTransferClient(
        chapa_secret_key(s),
        base_url=s.CHAPA_BASE_URL,
        timeout_s=float(s.CHAPA_HTTP_TIMEOUT_S),
        retry_delays=transfer_retry_delays_s(s),
    )


def transfer_webhook_secret(current: Settings | None = None) -> str:
    s = current or settings
    return (s.CHAPA_TRANSFER_WEBHOOK_SECRET or s.CHAPA_ENCRYPTION_KEY or "").strip()


def approval_webhook_secret(current: Settings | None = None) -> str:
    s = current or settings
    return (s.CHAPA_TRANSFER_APPROVAL_SECRET or s.CHAPA_ENCRYPTION_KEY or "").strip()
