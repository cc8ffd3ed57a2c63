from __future__ import annotations

from typing import Any, Optional


class PayoutError(Exception):
    code = "PAYOUT_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class PayoutValidationError(PayoutError):
    """Precondition failed. Never retried."""

    code = "PAYOUT_VALIDATION_FAILED"


class OrderNotFound(PayoutValidationError):
    code = "ORDER_NOT_FOUND"


class PayoutNotFound(PayoutError):
    code = "PAYOUT_NOT_FOUND"


class UnauthorizedCaller(PayoutValidationError):
    code = "UNAUTHORIZED"


class StateConflictError(PayoutError):
    """Payout details changed under a pending attempt; needs manual resolution."""

    code = "PAYOUT_STATE_CONFLICT"


class MaxAttemptsExceeded(PayoutError):
    code = "PAYOUT_MAX_ATTEMPTS"


class TransferError(PayoutError):
    code = "TRANSFER_FAILED"

    def __init__(self, message: str, *, reference: Optional[str] = None, attempts: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reference = reference
        self.attempts = attempts
        if reference is not None:
            self.details.setdefault("reference", reference)
        if attempts is not None:
            self.details.setdefault("attempts", attempts)


class TransientTransferError(TransferError):
    """Timeout or network failure talking to the transfer API."""

    code = "TRANSFER_TRANSIENT"


class PermanentTransferError(TransferError):
    """Processor answered and rejected the transfer."""

    code = "TRANSFER_REJECTED"
