"""Discount codes: the order writer's discount step and the coupon preview."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

from .errors import BusinessRuleError, NotFoundError, ShopError
from .metrics import DISCOUNT_REJECTED_TOTAL
from .models import DiscountCode, DiscountUsage, Order
from .pricing import round_half_up, shipping_fee_for
from .repository import DiscountRepository
from .schemas import DiscountValidate

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DiscountQuote:
    discount_id: int
    code: str
    amount: int


class DiscountPolicy(Protocol):
    async def quote(
        self,
        *,
        user_id: int,
        code: str | None,
        subtotal: int,
        shipping_fee: int,
    ) -> DiscountQuote | None: ...

    async def record(self, quote: DiscountQuote, *, user_id: int, order_id: int) -> None: ...


class NoDiscountPolicy:
    """Orders are always priced without a discount."""

    async def quote(
        self,
        *,
        user_id: int,
        code: str | None,
        subtotal: int,
        shipping_fee: int,
    ) -> DiscountQuote | None:
        if code:
            logger.info("Discount codes are disabled; ignoring %s for user %s", code, user_id)
        return None

    async def record(self, quote: DiscountQuote, *, user_id: int, order_id: int) -> None:
        return None


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_discount(discount: DiscountCode, *, order_amount: int, shipping_fee: int) -> int:
    if discount.discount_type == "percentage":
        amount = round_half_up(Decimal(order_amount) * Decimal(discount.discount_value) / Decimal(100))
        if discount.max_discount_amount is not None:
            amount = min(amount, discount.max_discount_amount)
    elif discount.discount_type == "fixed_amount":
        amount = discount.discount_value
    elif discount.discount_type == "free_shipping":
        amount = shipping_fee
    else:
        msg = f"Unknown discount type: {discount.discount_type}"
        raise ValueError(msg)
    return max(0, min(amount, order_amount))


class CodeDiscountPolicy:
    """Validates customer-supplied codes and records their use with the order."""

    def __init__(self, repository: DiscountRepository, clock: Callable[[], datetime] = _now) -> None:
        self.repository = repository
        self.clock = clock

    async def validate(self, *, user_id: int, code: str, order_amount: int) -> DiscountCode:
        discount = await self.repository.get_by_code(code)
        if discount is None:
            raise NotFoundError("Invalid discount code")
        if not discount.is_active:
            raise BusinessRuleError("Discount code is inactive")

        now = self.clock()
        if discount.starts_at is not None and now < _utc(discount.starts_at):
            raise BusinessRuleError("Discount code is not yet valid")
        if discount.ends_at is not None and now > _utc(discount.ends_at):
            raise BusinessRuleError("Discount code has expired")

        if discount.min_order_amount and order_amount < discount.min_order_amount:
            raise BusinessRuleError(f"Minimum order amount is {discount.min_order_amount} VND")
        if discount.max_uses and discount.used_count >= discount.max_uses:
            raise BusinessRuleError("Discount code has reached usage limit")
        if discount.max_uses_per_user:
            used = await self.repository.count_user_usages(discount.id, user_id)
            if used >= discount.max_uses_per_user:
                raise BusinessRuleError("You have reached the usage limit for this discount code")
        return discount

    async def quote(
        self,
        *,
        user_id: int,
        code: str | None,
        subtotal: int,
        shipping_fee: int,
    ) -> DiscountQuote | None:
        if not code:
            return None
        try:
            discount = await self.validate(user_id=user_id, code=code, order_amount=subtotal)
        except ShopError as exc:
            DISCOUNT_REJECTED_TOTAL.inc()
            logger.warning("Discount code %s rejected for user %s: %s", code, user_id, exc.message)
            return None

        amount = calculate_discount(discount, order_amount=subtotal, shipping_fee=shipping_fee)
        if amount == 0:
            return None
        return DiscountQuote(discount_id=discount.id, code=discount.code, amount=amount)

    async def record(self, quote: DiscountQuote, *, user_id: int, order_id: int) -> None:
        discount = await self.repository.get_by_code(quote.code)
        if discount is None:  # pragma: no cover - deleted between quote and record
            raise NotFoundError("Invalid discount code")
        await self.repository.record_usage(discount, user_id=user_id, order_id=order_id, amount=quote.amount)


@dataclass(frozen=True, slots=True)
class DiscountPreview:
    discount: DiscountCode
    amount: int
    order_amount: int

    @property
    def final_amount(self) -> int:
        return max(0, self.order_amount - self.amount)


class DiscountService:
    """Coupon preview before checkout and the customer's usage history."""

    def __init__(
        self,
        repository: DiscountRepository,
        *,
        enabled: bool = True,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.repository = repository
        self.enabled = enabled
        self.policy = CodeDiscountPolicy(repository, clock)

    async def preview(self, user_id: int, payload: DiscountValidate) -> DiscountPreview:
        if not self.enabled:
            raise BusinessRuleError("Discount codes are not accepted at the moment")
        discount = await self.policy.validate(user_id=user_id, code=payload.code, order_amount=payload.order_amount)
        # Free shipping is only worth something once the shipping method is known.
        shipping_fee = (
            shipping_fee_for(payload.order_amount, payload.shipping_method) if payload.shipping_method else 0
        )
        amount = calculate_discount(discount, order_amount=payload.order_amount, shipping_fee=shipping_fee)
        return DiscountPreview(discount=discount, amount=amount, order_amount=payload.order_amount)

    async def usage(self, user_id: int) -> list[tuple[DiscountUsage, DiscountCode, Order]]:
        return await self.repository.list_user_usage(user_id)
