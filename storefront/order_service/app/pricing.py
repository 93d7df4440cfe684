"""Shipping, tax and total computation for checkout."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Final, Literal

ShippingMethod = Literal["standard", "express", "same_day"]

FREE_SHIPPING_THRESHOLD: Final = 500_000
TAX_RATE: Final = Decimal("0.10")
SHIPPING_FEES: Final[dict[str, int]] = {
    "standard": 30_000,
    "express": 50_000,
    "same_day": 80_000,
}


@dataclass(frozen=True, slots=True)
class PricingBreakdown:
    subtotal: int
    shipping_fee: int
    tax_amount: int
    discount_amount: int
    total_amount: int


def round_half_up(amount: Decimal) -> int:
    return int(amount.to_integral_value(rounding=ROUND_HALF_UP))


def shipping_fee_for(subtotal: int, shipping_method: str) -> int:
    if subtotal >= FREE_SHIPPING_THRESHOLD:
        return 0
    try:
        return SHIPPING_FEES[shipping_method]
    except KeyError as exc:
        msg = f"Unsupported shipping method: {shipping_method}"
        raise ValueError(msg) from exc


def tax_for(subtotal: int) -> int:
    return round_half_up(Decimal(subtotal) * TAX_RATE)


def compute_pricing(subtotal: int, shipping_method: str, discount: int = 0) -> PricingBreakdown:
    """Price an order from its item subtotal (VND, integer amounts)."""

    if subtotal < 0:
        msg = "subtotal must not be negative"
        raise ValueError(msg)
    if discount < 0:
        msg = "discount must not be negative"
        raise ValueError(msg)

    shipping_fee = shipping_fee_for(subtotal, shipping_method)
    tax_amount = tax_for(subtotal)
    return PricingBreakdown(
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        tax_amount=tax_amount,
        discount_amount=discount,
        total_amount=subtotal + shipping_fee + tax_amount - discount,
    )
