# routes/webhooks.py
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import re
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.payouts.errors import TransferError
from app.payouts.reconcile import StatusUpdate, map_transfer_status, reconcile
from app.payouts.service import PayoutService
from app.payouts.state_machine import APPROVED, SUCCESS
from app.providers.base import TransferClient
from app.providers.config import approval_webhook_secret, transfer_webhook_secret
from deps.payouts import get_payout_service, get_transfer_client
from services.metrics import increment_webhook_event
from services.observability import get_request_id
from services.redaction import redact_text
from settings import settings


router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
logger = logging.getLogger("payouts.webhooks")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "no-store",
}

_HEX_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_AMOUNT_TOLERANCE = Decimal("0.01")


def _fail(status_code: int, detail: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail=detail, headers=SECURITY_HEADERS)


def _ok(content: dict[str, Any]) -> JSONResponse:
    return JSONResponse(content=content, headers=SECURITY_HEADERS)


def _verify_signature(*, raw: bytes, signature_header: str | None, secret: str | None) -> tuple[bool, str | None]:
    if not secret or not secret.strip():
        return False, "WEBHOOK_SECRET_NOT_CONFIGURED"

    if not signature_header or not signature_header.strip():
        return False, "MISSING_SIGNATURE"

    sig = signature_header.strip()
    if sig.lower().startswith("sha256="):
        sig = sig.split("=", 1)[1].strip()
    if not _HEX_SHA256_RE.match(sig):
        return False, "INVALID_SIGNATURE"

    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig.lower()):
        return False, "INVALID_SIGNATURE"

    return True, None


def _signature_header(req: Request) -> str | None:
    return req.headers.get("x-chapa-signature") or req.headers.get("chapa-signature")


def _extract_reference(payload: dict) -> str | None:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    ref = payload.get("reference") or data.get("reference") or payload.get("transfer_reference")
    if ref is None:
        return None
    return str(ref).strip() or None


def _field(payload: dict, key: str) -> Any:
    """Top-level value, falling back to the same key under `data`."""
    value = payload.get(key)
    if value is None and isinstance(payload.get("data"), dict):
        value = payload["data"].get(key)
    return value


async def _read_signed_payload(req: Request, *, kind: str, secret: str) -> dict:
    raw = await req.body()
    sig_ok, sig_err = _verify_signature(raw=raw, signature_header=_signature_header(req), secret=secret)

    if sig_err == "WEBHOOK_SECRET_NOT_CONFIGURED":
        logger.error("webhook_rejected kind=%s reason=%s", kind, sig_err)
        increment_webhook_event(kind, signature_valid=False, applied=False)
        raise _fail(500, "SERVER_CONFIGURATION_ERROR")

    if not sig_ok:
        logger.warning("webhook_rejected kind=%s reason=%s request_id=%s", kind, sig_err, get_request_id())
        increment_webhook_event(kind, signature_valid=False, applied=False)
        raise _fail(401, "INVALID_SIGNATURE")

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        increment_webhook_event(kind, signature_valid=True, applied=False)
        raise _fail(400, "INVALID_JSON")
    if not isinstance(payload, dict):
        increment_webhook_event(kind, signature_valid=True, applied=False)
        raise _fail(400, "INVALID_JSON")
    return payload


def _claimed_amount(value: Any) -> Decimal | None:
    """Numeric approval amount; strings and other types are not compared."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    claimed = Decimal(str(value))
    if not claimed.is_finite():
        return None
    return claimed


def _apply_transfer_event_sync(payload: dict, service: PayoutService, client: TransferClient) -> JSONResponse:
    kind = "transfer"
    reference = _extract_reference(payload)
    if not reference:
        increment_webhook_event(kind, signature_valid=True, applied=False)
        raise _fail(400, "MISSING_REFERENCE")

    payout = service.get_by_reference(reference)
    if payout is None:
        logger.warning("webhook_payout_not_found kind=%s reference=%s", kind, reference)
        increment_webhook_event(kind, signature_valid=True, applied=False)
        raise _fail(404, "PAYOUT_NOT_FOUND")

    status_raw = _field(payload, "status")
    chapa_reference = _field(payload, "chapa_reference")
    bank_reference = _field(payload, "bank_reference")

    if settings.CHAPA_VERIFY_WEBHOOK_TRANSFERS:
        try:
            verification = client.verify_transfer(reference)
        except TransferError as e:
            logger.error(
                "webhook_transfer_verification_failed reference=%s error=%s",
                reference,
                redact_text(e.message),
            )
            increment_webhook_event(kind, signature_valid=True, applied=False)
            raise _fail(502, "TRANSFER_VERIFICATION_FAILED")

        if not verification.status:
            increment_webhook_event(kind, signature_valid=True, applied=False)
            raise _fail(502, "TRANSFER_VERIFICATION_UNAVAILABLE")
        status_raw = verification.status
        chapa_reference = verification.chapa_reference or chapa_reference
        bank_reference = verification.bank_reference or bank_reference
    elif not status_raw:
        increment_webhook_event(kind, signature_valid=True, applied=False)
        raise _fail(400, "MISSING_STATUS")

    status = map_transfer_status(status_raw)
    updated = reconcile(
        service,
        StatusUpdate(
            payout_id=payout.id,
            status=status,
            chapa_reference=chapa_reference,
            bank_reference=bank_reference,
        ),
    )
    applied = updated.status == status
    increment_webhook_event(kind, signature_valid=True, applied=applied)
    logger.info(
        "webhook_received kind=%s reference=%s payout_id=%s status_raw=%s status=%s applied=%s request_id=%s",
        kind,
        reference,
        payout.id,
        status_raw,
        status,
        applied,
        get_request_id(),
    )
    return _ok({"success": True, "status": status, "applied": applied})


def _apply_approval_event_sync(payload: dict, service: PayoutService) -> JSONResponse:
    kind = "approval"
    reference = _extract_reference(payload)
    if not reference:
        increment_webhook_event(kind, signature_valid=True, applied=False)
        raise _fail(400, "MISSING_REFERENCE")

    payout = service.get_by_reference(reference)
    if payout is None:
        increment_webhook_event(kind, signature_valid=True, applied=False)
        raise _fail(404, "PAYOUT_NOT_FOUND")

    if payout.status == SUCCESS:
        increment_webhook_event(kind, signature_valid=True, applied=False)
        return _ok({"status": APPROVED, "reference": reference})

    claimed = _claimed_amount(_field(payload, "amount"))
    if claimed is not None and abs(claimed - payout.amount_net) > _AMOUNT_TOLERANCE:
        logger.warning(
            "webhook_approval_amount_mismatch reference=%s claimed=%s amount_net=%s",
            reference,
            claimed,
            payout.amount_net,
        )
        increment_webhook_event(kind, signature_valid=True, applied=False)
        raise _fail(400, "AMOUNT_MISMATCH")

    updated = reconcile(
        service,
        StatusUpdate(
            payout_id=payout.id,
            status=APPROVED,
            chapa_reference=_field(payload, "chapa_reference"),
            bank_reference=_field(payload, "bank_reference"),
        ),
    )
    applied = updated.status == APPROVED
    increment_webhook_event(kind, signature_valid=True, applied=applied)
    logger.info(
        "webhook_received kind=%s reference=%s payout_id=%s status=%s applied=%s request_id=%s",
        kind,
        reference,
        payout.id,
        APPROVED,
        applied,
        get_request_id(),
    )
    return _ok({"status": APPROVED, "reference": reference})


# Lookups, verification and the status write block; they run off the event loop.

@router.post("/chapa/transfers", operation_id="webhook_chapa_transfers")
async def chapa_transfer_webhook(
    req: Request,
    service: PayoutService = Depends(get_payout_service),
    client: TransferClient = Depends(get_transfer_client),
):
    payload = await _read_signed_payload(req, kind="transfer", secret=transfer_webhook_secret())
    return await asyncio.to_thread(_apply_transfer_event_sync, payload, service, client)


@router.post("/chapa/approval", operation_id="webhook_chapa_approval")
async def chapa_approval_webhook(
    req: Request,
    service: PayoutService = Depends(get_payout_service),
):
    payload = await _read_signed_payload(req, kind="approval", secret=approval_webhook_secret())
    return await asyncio.to_thread(_apply_approval_event_sync, payload, service)
