from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Optional

from app.payouts.errors import MaxAttemptsExceeded, StateConflictError
from app.payouts.model import Business, Payout, PayoutAmounts

PENDING = "pending"
APPROVED = "approved"
QUEUED = "queued"
SUCCESS = "success"
FAILED = "failed"
REVERTED = "reverted"

STATUSES = (PENDING, APPROVED, QUEUED, SUCCESS, FAILED, REVERTED)
TERMINAL_STATUSES = (SUCCESS, REVERTED)

# Already accepted by the processor: never start another attempt.
SHORT_CIRCUIT_STATUSES = (SUCCESS, QUEUED, APPROVED)
RETRYABLE_STATUSES = (PENDING, FAILED)

RETRY_BACKOFFS = (
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(hours=1),
    timedelta(hours=6),
    timedelta(hours=24),
)
MAX_ATTEMPTS = len(RETRY_BACKOFFS)

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_apply_status(current: str, requested: str) -> bool:
    """
    Terminal states are write-once: only a same-status update (new refs) passes.
    """
    if is_terminal(current):
        return current == requested
    return True


def backoff_for(attempts: int) -> timedelta:
    index = max(0, min(attempts - 1, len(RETRY_BACKOFFS) - 1))
    return RETRY_BACKOFFS[index]


def is_retry_due(payout: Payout, now: datetime) -> bool:
    if payout.status not in RETRYABLE_STATUSES:
        return False
    if payout.attempts >= MAX_ATTEMPTS:
        return False
    return now - payout.updated_at >= backoff_for(payout.attempts)


def build_reference(order_id: str, attempt: int) -> str:
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"PO-{order_id}-{attempt}-{suffix}"


@dataclass(frozen=True)
class AttemptDecision:
    action: Literal["create", "retry", "reuse", "skip"]
    attempt_number: int
    payout: Optional[Payout] = None
    reason: Optional[str] = None

    @property
    def starts_attempt(self) -> bool:
        return self.action in ("create", "retry")


def _amounts_match(payout: Payout, amounts: PayoutAmounts, currency: str) -> bool:
    return (
        payout.amount_gross == amounts.amount_gross
        and payout.platform_fee_seller == amounts.platform_fee_seller
        and payout.processor_fee_allocated == amounts.processor_fee_allocated
        and payout.amount_net == amounts.amount_net
        and payout.currency == currency
    )


def decide_attempt(
    existing: Optional[Payout],
    *,
    amounts: PayoutAmounts,
    currency: str,
    business: Optional[Business],
    interactive: bool,
    now: datetime,
) -> AttemptDecision:
    """
    Decide whether a new transfer attempt may start for an order.

    Evaluated on the freshest read of the payout row; the caller persists the
    outcome with a compare-and-swap and re-evaluates if it loses the race.
    """
    if existing is None:
        return AttemptDecision(action="create", attempt_number=1)

    if existing.status in SHORT_CIRCUIT_STATUSES:
        return AttemptDecision(
            action="reuse",
            attempt_number=existing.attempts,
            payout=existing,
            reason=f"ALREADY_{existing.status.upper()}",
        )

    if existing.status == REVERTED:
        raise StateConflictError(
            "Payout was reverted; manual resolution required",
            details={"payout_id": str(existing.id), "order_id": existing.order_id},
        )

    if existing.attempts >= MAX_ATTEMPTS:
        raise MaxAttemptsExceeded(
            "Maximum payout attempts reached",
            details={"payout_id": str(existing.id), "attempts": existing.attempts},
        )

    if existing.status == PENDING and interactive:
        if not _amounts_match(existing, amounts, currency):
            raise StateConflictError(
                "Payout details have changed; please contact support",
                details={"payout_id": str(existing.id), "field": "amounts"},
            )
        if (
            business is not None
            and business.payout_updated_at is not None
            and business.payout_updated_at > existing.created_at
        ):
            raise StateConflictError(
                "Payout details have changed; please contact support",
                details={"payout_id": str(existing.id), "field": "bank_details"},
            )
        return AttemptDecision(
            action="reuse",
            attempt_number=existing.attempts,
            payout=existing,
            reason="PENDING_UNCHANGED",
        )

    if not interactive and not is_retry_due(existing, now):
        # Another caller moved the row since the sweep selected it.
        return AttemptDecision(
            action="skip",
            attempt_number=existing.attempts,
            payout=existing,
            reason="NOT_DUE",
        )

    return AttemptDecision(action="retry", attempt_number=existing.attempts + 1, payout=existing)
