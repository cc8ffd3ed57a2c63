# app/payouts/reconcile.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from app.payouts.model import Payout
from app.payouts.service import PayoutService
from app.payouts.state_machine import APPROVED, FAILED, QUEUED, REVERTED, SUCCESS

logger = logging.getLogger("payouts.service")

_PROCESSOR_STATUS_MAP = {
    "success": SUCCESS,
    "successful": SUCCESS,
    "approved": APPROVED,
    "pending": QUEUED,
    "reverted": REVERTED,
    "reversed": REVERTED,
}


@dataclass(frozen=True)
class StatusUpdate:
    payout_id: UUID
    status: str
    chapa_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    last_error: Optional[str] = None


def map_transfer_status(raw: Optional[str]) -> str:
    """
    Processor transfer status -> payout status. Unknown values are failures.
    """
    return _PROCESSOR_STATUS_MAP.get(str(raw or "").strip().lower(), FAILED)


def reconcile(service: PayoutService, update: StatusUpdate) -> Payout:
    logger.info(
        "payout_reconcile payout_id=%s status=%s chapa_reference=%s",
        update.payout_id,
        update.status,
        update.chapa_reference,
    )
    return service.update_status(
        update.payout_id,
        update.status,
        chapa_reference=update.chapa_reference,
        bank_reference=update.bank_reference,
        last_error=update.last_error,
    )
