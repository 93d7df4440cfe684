"""Human-readable, date-scoped order numbers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timezone

from .repository import OrderRepository

ORDER_NUMBER_PREFIX = "ORD"


def _today() -> date:
    return datetime.now(timezone.utc).date()


def format_order_number(day: date, sequence: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}-{day:%Y%m%d}-{sequence:04d}"


class OrderNumberGenerator:
    """Proposes ``ORD-YYYYMMDD-NNNN`` candidates.

    The sequence comes from counting the day's numbers, which two concurrent
    checkouts can both observe. The UNIQUE constraint on ``orders.order_number``
    decides the winner; the loser asks again with a higher ``attempt``.
    """

    def __init__(self, repository: OrderRepository, clock: Callable[[], date] = _today) -> None:
        self.repository = repository
        self.clock = clock

    async def generate(self, attempt: int = 0) -> str:
        day = self.clock()
        issued = await self.repository.count_orders_with_prefix(f"{ORDER_NUMBER_PREFIX}-{day:%Y%m%d}-")
        return format_order_number(day, issued + 1 + attempt)
