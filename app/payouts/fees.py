from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from app.payouts.model import PayoutAmounts

PLATFORM_FEE_RATE = Decimal("0.01")
_CENT = Decimal("0.01")
_ZERO = Decimal("0")

Number = Union[Decimal, int, str]


def round_currency(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _dec(value: Optional[Number]) -> Decimal:
    if value is None:
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_payout_amounts(
    gross: Number,
    payment_total: Optional[Number],
    processor_fee_total: Optional[Number],
    *,
    platform_fee_rate: Number = PLATFORM_FEE_RATE,
) -> PayoutAmounts:
    """
    Split an order's gross amount into platform fee, allocated processor fee
    and the net amount owed to the seller.

    A payment can fund several orders, so the payment-level processor fee is
    allocated by this order's share of the payment total.
    """
    amount_gross = round_currency(_dec(gross))
    total = _dec(payment_total)
    fee_total = _dec(processor_fee_total)

    platform_fee_seller = round_currency(amount_gross * _dec(platform_fee_rate))
    if total > 0:
        processor_fee_allocated = round_currency(fee_total * (amount_gross / total))
    else:
        processor_fee_allocated = round_currency(_ZERO)

    amount_net = max(
        round_currency(_ZERO),
        round_currency(amount_gross - platform_fee_seller - processor_fee_allocated),
    )
    return PayoutAmounts(
        amount_gross=amount_gross,
        platform_fee_seller=platform_fee_seller,
        processor_fee_allocated=processor_fee_allocated,
        amount_net=amount_net,
    )
