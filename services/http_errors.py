# services/http_errors.py
from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from app.payouts.errors import PayoutError

PAYOUT_ERROR_HTTP_MAP: dict[str, int] = {
    "PAYOUT_VALIDATION_FAILED": 400,
    "ORDER_NOT_FOUND": 404,
    "PAYOUT_NOT_FOUND": 404,
    "UNAUTHORIZED": 403,
    "PAYOUT_STATE_CONFLICT": 409,
    "PAYOUT_MAX_ATTEMPTS": 409,
    "TRANSFER_FAILED": 502,
    "TRANSFER_TRANSIENT": 502,
    "TRANSFER_REJECTED": 502,
}


def http_status_for(exc: PayoutError) -> int:
    return PAYOUT_ERROR_HTTP_MAP.get(exc.code, 500)


async def payout_error_handler(request: Request, exc: PayoutError):
    status = http_status_for(exc)
    if status == 500:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(
        status_code=status,
        content={"detail": exc.message, "code": exc.code},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
