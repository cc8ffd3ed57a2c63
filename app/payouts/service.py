# app/payouts/service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from app.payouts.errors import (
    OrderNotFound,
    PayoutError,
    PayoutNotFound,
    PayoutValidationError,
    StateConflictError,
    UnauthorizedCaller,
)
from app.payouts.fees import PLATFORM_FEE_RATE, compute_payout_amounts
from app.payouts.model import AttemptPlan, Payout
from app.payouts.repository import PayoutStore, PostgresPayoutStore
from app.payouts.state_machine import (
    FAILED,
    QUEUED,
    STATUSES,
    build_reference,
    decide_attempt,
)
from app.providers.base import TransferClient, TransferRequest
from app.providers.config import build_transfer_client
from services.metrics import increment_payout_attempt, increment_payout_status_update
from services.redaction import mask_account_number
from settings import settings

logger = logging.getLogger("payouts.service")

ORDER_COMPLETED = "completed"
PAYMENT_SUCCESS = "success"
DEFAULT_CURRENCY = "ETB"

# Bounded re-reads when a compare-and-swap loses to a concurrent writer.
MAX_CAS_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransferOutcome:
    payout: Payout
    action: str  # create | retry | reuse | skip
    reason: Optional[str] = None

    @property
    def transferred(self) -> bool:
        return self.action in ("create", "retry")


class PayoutService:
    def __init__(
        self,
        store: PayoutStore,
        client: TransferClient,
        *,
        platform_fee_rate: Decimal | str = PLATFORM_FEE_RATE,
        default_currency: str = DEFAULT_CURRENCY,
    ) -> None:
        self.store = store
        self.client = client
        self.platform_fee_rate = Decimal(str(platform_fee_rate))
        self.default_currency = default_currency

    # ----------------------------------------------------------
    # Orchestrator
    # ----------------------------------------------------------

    def attempt_transfer(
        self,
        order_id: str,
        caller_identity: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> TransferOutcome:
        """
        Validate, compute, record and send one transfer attempt for an order.

        caller_identity set means the interactive path (seller asked to be
        paid now); None means the retry sweep.
        """
        now = now or _utcnow()

        try:
            prepared = self._prepare_attempt(order_id, caller_identity, now)
        except PayoutError as e:
            payout_id = e.details.get("payout_id")
            logger.warning(
                "payout_attempt_rejected order_id=%s payout_id=%s attempt=%s code=%s error=%s",
                order_id,
                payout_id,
                e.details.get("attempts"),
                e.code,
                e.message,
                extra={"order_id": order_id, "payout_id": payout_id, "error": e.message},
            )
            increment_payout_attempt("rejected")
            raise

        if isinstance(prepared, TransferOutcome):
            return prepared
        payout, decision, business = prepared

        log_ctx = {
            "order_id": order_id,
            "payout_id": str(payout.id),
            "attempt": payout.attempts,
            "reference": payout.reference,
        }
        logger.info(
            "payout_attempt_started order_id=%s payout_id=%s attempt=%s reference=%s amount_net=%s currency=%s account=%s",
            order_id,
            payout.id,
            payout.attempts,
            payout.reference,
            payout.amount_net,
            payout.currency,
            mask_account_number(business.payout_account_number),
            extra=log_ctx,
        )

        request = TransferRequest(
            amount=payout.amount_net,
            currency=payout.currency,
            account_name=business.payout_account_name,
            account_number=business.payout_account_number,
            bank_code=business.payout_bank_code,
            reference=payout.reference,
        )
        try:
            result = self.client.create_transfer(request)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(
                "payout_attempt_failed order_id=%s payout_id=%s attempt=%s error=%s",
                order_id,
                payout.id,
                payout.attempts,
                message,
                extra={**log_ctx, "error": message},
            )
            increment_payout_attempt("failed")
            try:
                self.update_status(
                    payout.id,
                    FAILED,
                    last_error=message,
                    expected_reference=payout.reference,
                )
            except Exception:
                # the transfer error below is what the caller acts on
                logger.exception(
                    "payout_failure_not_recorded order_id=%s payout_id=%s attempt=%s",
                    order_id,
                    payout.id,
                    payout.attempts,
                    extra=log_ctx,
                )
            raise e

        increment_payout_attempt("queued")
        updated = self.update_status(
            payout.id,
            QUEUED,
            chapa_reference=result.chapa_reference,
            bank_reference=result.bank_reference,
            expected_reference=payout.reference,
        )
        logger.info(
            "payout_attempt_queued order_id=%s payout_id=%s attempt=%s chapa_reference=%s",
            order_id,
            payout.id,
            payout.attempts,
            result.chapa_reference,
            extra=log_ctx,
        )
        return TransferOutcome(payout=updated, action=decision.action)

    def _prepare_attempt(self, order_id: str, caller_identity: Optional[str], now: datetime):
        """
        Check preconditions and record the attempt. Returns a TransferOutcome
        when no transfer should be sent, else (payout, decision, business).
        """
        interactive = caller_identity is not None

        ctx = self.store.load_context(order_id)
        if ctx is None:
            raise OrderNotFound("Order not found", details={"order_id": order_id})

        order = ctx.order
        if interactive and order.seller_id != caller_identity:
            raise UnauthorizedCaller("Unauthorized", details={"order_id": order_id})
        if not order.seller_id:
            raise PayoutValidationError("Order has no seller", details={"order_id": order_id})
        if order.status != ORDER_COMPLETED:
            raise PayoutValidationError(
                "Order must be completed before payout",
                details={"order_id": order_id, "order_status": order.status},
            )

        payment = ctx.payment
        if payment is None or payment.status != PAYMENT_SUCCESS:
            raise PayoutValidationError(
                "Payment is not successful",
                details={"order_id": order_id, "payment_status": payment.status if payment else None},
            )

        business = ctx.business
        if business is None:
            raise PayoutValidationError("Seller business not found", details={"order_id": order_id})
        if not (business.payout_bank_code and business.payout_account_number and business.payout_account_name):
            raise PayoutValidationError(
                "Seller payout bank details are missing",
                details={"order_id": order_id, "business_id": business.id},
            )

        amounts = compute_payout_amounts(
            order.amount,
            payment.amount or order.amount,
            payment.processor_fee_total,
            platform_fee_rate=self.platform_fee_rate,
        )
        if amounts.amount_net <= 0:
            raise PayoutValidationError(
                "Payout amount must be greater than zero",
                details={"order_id": order_id, "amount_net": str(amounts.amount_net)},
            )
        currency = payment.currency or self.default_currency

        existing = ctx.existing_payout
        for _ in range(MAX_CAS_RETRIES):
            decision = decide_attempt(
                existing,
                amounts=amounts,
                currency=currency,
                business=business,
                interactive=interactive,
                now=now,
            )
            if not decision.starts_attempt:
                logger.info(
                    "payout_attempt_short_circuit order_id=%s payout_id=%s status=%s reason=%s",
                    order_id,
                    decision.payout.id,
                    decision.payout.status,
                    decision.reason,
                )
                increment_payout_attempt(decision.action)
                return TransferOutcome(payout=decision.payout, action=decision.action, reason=decision.reason)

            plan = AttemptPlan(
                order_id=order.id,
                seller_id=order.seller_id,
                payment_id=payment.id,
                amounts=amounts,
                currency=currency,
                reference=build_reference(order.id, decision.attempt_number),
            )
            if existing is None:
                payout = self.store.insert_attempt(plan)
            else:
                payout = self.store.update_attempt(existing, plan)
            if payout is not None:
                return payout, decision, business

            logger.info("payout_attempt_cas_lost order_id=%s", order_id)
            existing = self.store.get_payout_by_order(order_id)

        raise StateConflictError(
            "Payout is being updated concurrently; please retry",
            details={"order_id": order_id},
        )

    # ----------------------------------------------------------
    # Status updates
    # ----------------------------------------------------------

    def update_status(
        self,
        payout_id: UUID,
        status: str,
        *,
        chapa_reference: Optional[str] = None,
        bank_reference: Optional[str] = None,
        last_error: Optional[str] = None,
        expected_reference: Optional[str] = None,
    ) -> Payout:
        """
        Apply a status. Terminal payouts keep their status; the current record
        is returned instead of raising.
        """
        if status not in STATUSES:
            raise PayoutValidationError(f"Unknown payout status: {status}", details={"status": status})

        payout, applied = self.store.update_status(
            payout_id,
            status=status,
            chapa_reference=chapa_reference,
            bank_reference=bank_reference,
            last_error=last_error,
            expected_reference=expected_reference,
        )
        if payout is None:
            logger.error("payout_status_update_not_found payout_id=%s status=%s", payout_id, status)
            raise PayoutNotFound("Payout not found", details={"payout_id": str(payout_id)})

        increment_payout_status_update(status, applied)
        if not applied:
            logger.warning(
                "payout_status_update_rejected payout_id=%s current_status=%s requested_status=%s",
                payout_id,
                payout.status,
                status,
                extra={"payout_id": str(payout_id), "order_id": payout.order_id},
            )
            return payout

        logger.info(
            "payout_status_updated payout_id=%s order_id=%s status=%s",
            payout_id,
            payout.order_id,
            status,
            extra={"payout_id": str(payout_id), "order_id": payout.order_id},
        )
        return payout

    # ----------------------------------------------------------
    # Queries
    # ----------------------------------------------------------

    def list_for_seller(self, seller_identity: str, *, limit: int = 100) -> list[Payout]:
        user = self.store.get_user_by_external_id(seller_identity)
        if user is None:
            return []
        return self.store.list_for_seller(user.external_id, limit=limit)

    def get_by_order(self, order_id: str, caller_identity: str) -> Optional[Payout]:
        """
        Payout for an order, visible to the order's buyer or seller only.
        """
        user = self.store.get_user_by_external_id(caller_identity)
        if user is None:
            raise UnauthorizedCaller("Unauthorized")

        order = self.store.get_order(order_id)
        if order is None:
            return None

        is_buyer = order.buyer_id is not None and order.buyer_id in (user.id, user.external_id)
        is_seller = order.seller_id == user.external_id
        if not (is_buyer or is_seller):
            raise UnauthorizedCaller("Unauthorized", details={"order_id": order_id})

        return self.store.get_payout_by_order(order_id)

    def get_by_reference(self, reference: str) -> Optional[Payout]:
        return self.store.get_payout_by_reference(reference)


def build_payout_service() -> PayoutService:
    """Service wired to Postgres and the Chapa client from settings."""
    return PayoutService(
        PostgresPayoutStore(),
        build_transfer_client(),
        platform_fee_rate=settings.PAYOUT_PLATFORM_FEE_RATE,
        default_currency=settings.PAYOUT_DEFAULT_CURRENCY,
    )
