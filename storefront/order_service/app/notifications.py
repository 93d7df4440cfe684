"""E-mail side effects of the payment workflow."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Protocol

from .metrics import PAYMENT_EMAIL_FAILURES_TOTAL
from .models import Order

logger = logging.getLogger(__name__)


class EmailProvider(Protocol):
    async def send(
        self,
        *,
        recipient: str,
        subject: str,
        template: str,
        context: dict[str, Any],
    ) -> None: ...


@dataclass(slots=True)
class SentEmail:
    recipient: str
    subject: str
    template: str
    context: dict[str, Any]


class InMemoryEmailProvider:
    """Simple provider storing sent e-mails for inspection during tests."""

    def __init__(self) -> None:
        self.sent: List[SentEmail] = []

    async def send(
        self,
        *,
        recipient: str,
        subject: str,
        template: str,
        context: dict[str, Any],
    ) -> None:
        self.sent.append(SentEmail(recipient=recipient, subject=subject, template=template, context=context))


class PaymentNotifier:
    """Best-effort customer e-mails, sent after the payment result is committed.

    A failed send never undoes a payment.
    """

    def __init__(self, provider: EmailProvider | None) -> None:
        self.provider = provider

    async def payment_succeeded(self, order: Order, *, transaction_id: str | None) -> bool:
        if self.provider is None or not order.customer_email:
            return False
        try:
            await self.provider.send(
                recipient=order.customer_email,
                subject=f"Thanh toán thành công đơn hàng #{order.order_number}",
                template="payment-success",
                context={
                    "customer_name": order.customer_name or "Khách hàng",
                    "order_number": order.order_number,
                    "amount": order.total_amount,
                    "transaction_id": transaction_id or "",
                    "payment_method": "MoMo",
                },
            )
        except Exception as exc:
            PAYMENT_EMAIL_FAILURES_TOTAL.inc()
            logger.error("Failed to send payment success email for %s: %s", order.order_number, exc)
            return False
        return True
