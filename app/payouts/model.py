from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Any
from uuid import UUID
from datetime import datetime


@dataclass(frozen=True)
class Payout:
    id: UUID
    order_id: str
    seller_id: str
    payment_id: Optional[str]
    amount_gross: Decimal
    platform_fee_seller: Decimal
    processor_fee_allocated: Decimal
    amount_net: Decimal
    currency: str
    status: str
    reference: str
    chapa_reference: Optional[str]
    bank_reference: Optional[str]
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "order_id": self.order_id,
            "seller_id": self.seller_id,
            "payment_id": self.payment_id,
            "amount_gross": str(self.amount_gross),
            "platform_fee_seller": str(self.platform_fee_seller),
            "processor_fee_allocated": str(self.processor_fee_allocated),
            "amount_net": str(self.amount_net),
            "currency": self.currency,
            "status": self.status,
            "reference": self.reference,
            "chapa_reference": self.chapa_reference,
            "bank_reference": self.bank_reference,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class PayoutAmounts:
    amount_gross: Decimal
    platform_fee_seller: Decimal
    processor_fee_allocated: Decimal
    amount_net: Decimal


# --- Collaborator records (read-only) ---

@dataclass(frozen=True)
class Order:
    id: str
    amount: Decimal
    status: str
    seller_id: Optional[str]
    payment_id: Optional[str]
    buyer_id: Optional[str] = None


@dataclass(frozen=True)
class Payment:
    id: str
    amount: Decimal
    currency: Optional[str]
    status: str
    processor_fee_total: Optional[Decimal] = None


@dataclass(frozen=True)
class SellerUser:
    id: str
    external_id: str


@dataclass(frozen=True)
class Business:
    id: str
    owner_id: str
    payout_bank_code: Optional[str]
    payout_account_number: Optional[str]
    payout_account_name: Optional[str]
    payout_updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class TransferContext:
    order: Order
    payment: Optional[Payment] = None
    existing_payout: Optional[Payout] = None
    seller_user: Optional[SellerUser] = None
    business: Optional[Business] = None


@dataclass(frozen=True)
class AttemptPlan:
    """
    Fields written when a payout attempt is prepared.
    """
    order_id: str
    seller_id: str
    payment_id: Optional[str]
    amounts: PayoutAmounts
    currency: str
    reference: str
