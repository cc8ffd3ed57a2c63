# routes/payouts.py
from __future__ import annotations

import logging
from typing import Any, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.payouts.errors import PayoutError
from app.payouts.model import Payout
from app.payouts.reconcile import StatusUpdate, reconcile
from app.payouts.service import PayoutService
from app.providers.base import TransferClient
from deps.auth import CurrentUser, get_current_user, require_internal_token
from deps.payouts import get_payout_service, get_transfer_client
from settings import settings

logger = logging.getLogger("payouts.service")
router = APIRouter(prefix="/v1", tags=["payouts"])

PayoutStatus = Literal["pending", "approved", "queued", "success", "failed", "reverted"]


class PayoutOut(BaseModel):
    id: UUID
    order_id: str
    seller_id: str
    payment_id: Optional[str] = None
    amount_gross: str
    platform_fee_seller: str
    processor_fee_allocated: str
    amount_net: str
    currency: str
    status: PayoutStatus
    reference: str
    chapa_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    attempts: int
    last_error: Optional[str] = None
    created_at: str
    updated_at: str


class TransferIn(BaseModel):
    order_id: str = Field(min_length=1)


class TransferOut(BaseModel):
    success: bool
    payout: PayoutOut


class PayoutListResponse(BaseModel):
    payouts: List[PayoutOut]


class StatusUpdateIn(BaseModel):
    payout_id: UUID
    status: PayoutStatus
    chapa_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    last_error: Optional[str] = None


def _out(payout: Payout) -> PayoutOut:
    return PayoutOut(**payout.to_dict())


@router.post("/payouts/transfer", response_model=TransferOut, operation_id="payouts_transfer")
def transfer(
    body: TransferIn,
    user: CurrentUser = Depends(get_current_user),
    service: PayoutService = Depends(get_payout_service),
):
    if not settings.PAYOUTS_ENABLED:
        raise HTTPException(status_code=503, detail="PAYOUTS_DISABLED")

    outcome = service.attempt_transfer(body.order_id, user.external_id)
    return TransferOut(success=True, payout=_out(outcome.payout))


@router.get("/payouts", response_model=PayoutListResponse, operation_id="payouts_list")
def list_payouts(
    user: CurrentUser = Depends(get_current_user),
    service: PayoutService = Depends(get_payout_service),
):
    payouts = service.list_for_seller(user.external_id)
    return PayoutListResponse(payouts=[_out(p) for p in payouts])


@router.get("/payouts/banks", operation_id="payouts_banks")
def list_banks(
    user: CurrentUser = Depends(get_current_user),
    client: TransferClient = Depends(get_transfer_client),
) -> Any:
    try:
        return client.get_banks()
    except PayoutError as e:
        logger.warning("chapa_banks_failed code=%s error=%s", e.code, e.message)
        status = 400 if e.details.get("http_status") == 400 else 503
        raise HTTPException(status_code=status, detail="BANKS_UNAVAILABLE")


@router.get(
    "/payouts/by-reference/{reference}",
    response_model=PayoutOut,
    operation_id="payouts_by_reference",
    dependencies=[Depends(require_internal_token)],
)
def get_by_reference(
    reference: str,
    service: PayoutService = Depends(get_payout_service),
):
    payout = service.get_by_reference(reference)
    if payout is None:
        raise HTTPException(status_code=404, detail="PAYOUT_NOT_FOUND")
    return _out(payout)


@router.get("/orders/{order_id}/payout", response_model=Optional[PayoutOut], operation_id="order_payout")
def get_order_payout(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: PayoutService = Depends(get_payout_service),
):
    payout = service.get_by_order(order_id, user.external_id)
    return _out(payout) if payout else None


@router.post(
    "/internal/payouts/status",
    response_model=PayoutOut,
    operation_id="payouts_internal_status",
    dependencies=[Depends(require_internal_token)],
)
def internal_status_update(
    body: StatusUpdateIn,
    service: PayoutService = Depends(get_payout_service),
):
    payout = reconcile(
        service,
        StatusUpdate(
            payout_id=body.payout_id,
            status=body.status,
            chapa_reference=body.chapa_reference,
            bank_reference=body.bank_reference,
            last_error=body.last_error,
        ),
    )
    return _out(payout)
