"""Issuing MoMo payments for orders and reconciling their results."""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from .errors import BusinessRuleError, InvalidSignatureError, NotFoundError
from .metrics import ORDER_STATUS_TRANSITIONS_TOTAL, PAYMENT_CALLBACKS_TOTAL
from .models import TERMINAL_STATUSES, Order, OrderStatus
from .momo import GatewayOrderId, GatewayOrderKind, MomoClient, MomoPayment, MomoPaymentRequest
from .notifications import PaymentNotifier
from .repository import OrderRepository
from .schemas import MomoIpnPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PaymentResult:
    gateway_order_id: str
    result_code: int
    message: str
    trans_id: str | None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def order_number(self) -> str:
        return GatewayOrderId.decode(self.gateway_order_id).order_number


@dataclass(frozen=True, slots=True)
class AuthoritativePaymentUpdate:
    """A result MoMo signed; only :meth:`from_ipn` should build one."""

    result: PaymentResult

    @classmethod
    def from_ipn(cls, payload: MomoIpnPayload, gateway: MomoClient) -> AuthoritativePaymentUpdate:
        if not gateway.verify_ipn(payload):
            PAYMENT_CALLBACKS_TOTAL.labels(source="ipn", outcome="invalid_signature").inc()
            raise InvalidSignatureError("Invalid IPN signature")
        return cls(
            PaymentResult(
                gateway_order_id=payload.order_id,
                result_code=payload.result_code,
                message=payload.message,
                trans_id=str(payload.trans_id),
            )
        )


@dataclass(frozen=True, slots=True)
class BestEffortPaymentUpdate:
    """A result reported by the customer's browser on the return redirect; unsigned."""

    result: PaymentResult

    @classmethod
    def from_return(
        cls,
        *,
        order_id: str,
        result_code: int,
        message: str | None,
        trans_id: str | None,
    ) -> BestEffortPaymentUpdate:
        return cls(
            PaymentResult(
                gateway_order_id=order_id,
                result_code=result_code,
                message=message or "",
                trans_id=trans_id,
            )
        )


PaymentUpdate = AuthoritativePaymentUpdate | BestEffortPaymentUpdate


class PaymentReconciler:
    """Applies gateway results to orders exactly once."""

    def __init__(self, repository: OrderRepository, notifier: PaymentNotifier | None = None) -> None:
        self.repository = repository
        self.notifier = notifier or PaymentNotifier(None)

    async def apply(self, update: PaymentUpdate) -> Order | None:
        """Return the updated order, or ``None`` when the update was skipped."""

        authoritative = isinstance(update, AuthoritativePaymentUpdate)
        source = "ipn" if authoritative else "return"
        result = update.result

        order = await self.repository.get_by_number(result.order_number)
        if order is None:
            PAYMENT_CALLBACKS_TOTAL.labels(source=source, outcome="unknown_order").inc()
            logger.error("Order not found: %s (from %s)", result.order_number, result.gateway_order_id)
            raise NotFoundError("Order not found")

        skip = self._skip_reason(order, result, authoritative=authoritative)
        if skip is not None:
            PAYMENT_CALLBACKS_TOTAL.labels(source=source, outcome=skip).inc()
            logger.info("Skipping %s payment result for %s: %s", source, order.order_number, skip)
            return None

        previous_status = order.status
        next_status = previous_status
        values: dict[str, object] = {
            "momo_trans_id": result.trans_id,
            "momo_result_code": result.result_code,
            "momo_message": result.message,
        }
        if authoritative:
            values["payment_verified"] = True
        if result.succeeded:
            values["payment_status"] = "paid"
            values["paid_at"] = datetime.now(timezone.utc)
            if previous_status is OrderStatus.PENDING:
                next_status = OrderStatus.CONFIRMED
                values["status_id"] = next_status.value
        else:
            values["payment_status"] = "failed"

        applied = await self.repository.apply_payment_result(
            order, values=values, require_unverified=not authoritative
        )
        if not applied:
            PAYMENT_CALLBACKS_TOTAL.labels(source=source, outcome="duplicate").inc()
            logger.info("Payment for %s was settled concurrently; nothing to do", order.order_number)
            return None

        note = (
            f"MoMo payment succeeded. Transaction: {result.trans_id}"
            if result.succeeded
            else f"MoMo payment failed: {result.message}"
        )
        await self.repository.add_history(order, status_id=next_status, note=note, changed_by=order.user_id)
        if next_status is not previous_status:
            ORDER_STATUS_TRANSITIONS_TOTAL.labels(status=next_status.label.lower()).inc()
        PAYMENT_CALLBACKS_TOTAL.labels(source=source, outcome="paid" if result.succeeded else "failed").inc()
        logger.info(
            "Order %s payment status updated from %s to %s",
            order.order_number,
            source,
            values["payment_status"],
        )

        order = await self.repository.reload(order)
        if result.succeeded:
            # The customer is only told about a payment that is already stored.
            await self.repository.session.commit()
            await self.notifier.payment_succeeded(order, transaction_id=result.trans_id)
        return order

    @staticmethod
    def _skip_reason(order: Order, result: PaymentResult, *, authoritative: bool) -> str | None:
        if order.payment_status == "paid":
            return "already_paid"
        if order.status in TERMINAL_STATUSES:
            return "terminal_order"
        if order.payment_method != "momo":
            return "not_momo"
        if not authoritative:
            if order.payment_verified:
                return "superseded"
            # An unsigned redirect can only settle the attempt we last sent to MoMo.
            if order.momo_order_id is None:
                return "no_attempt"
            if order.momo_order_id != result.gateway_order_id:
                return "stale_attempt"
        return None


def _gateway_items(order: Order) -> list[dict[str, object]]:
    return [
        {
            "id": str(item.product_id),
            "name": item.product_name,
            "description": item.product_name,
            "price": item.unit_price,
            "currency": "VND",
            "quantity": item.quantity,
            "totalPrice": item.subtotal,
        }
        for item in order.items
    ]


class PaymentService:
    """Starts MoMo payment attempts for existing orders."""

    def __init__(self, repository: OrderRepository, gateway: MomoClient) -> None:
        self.repository = repository
        self.gateway = gateway

    async def start_payment(self, order: Order, *, kind: GatewayOrderKind) -> MomoPayment:
        gateway_order_id = GatewayOrderId(kind, order.order_number, self.gateway.clock())
        retry = kind is GatewayOrderKind.RETRY
        request = MomoPaymentRequest(
            order_id=gateway_order_id.encode(),
            order_info=(
                f"Thanh toán lại đơn hàng #{order.order_number}"
                if retry
                else f"Thanh toán đơn hàng #{order.order_number}"
            ),
            amount=order.total_amount,
            extra_data=(
                base64.b64encode(json.dumps({"originalOrderNumber": order.order_number}).encode()).decode()
                if retry
                else ""
            ),
            items=_gateway_items(order),
            user_info={
                "name": order.customer_name or "Khách hàng",
                "phoneNumber": order.customer_phone,
                "email": order.customer_email,
            },
        )

        # The newest attempt is the only one a return redirect may settle.
        order.momo_order_id = request.order_id
        order.payment_verified = False
        await self.repository.session.flush()

        payment = await self.gateway.create_payment(request)
        logger.info("MoMo payment %s created for order %s", request.order_id, order.order_number)
        return payment

    async def retry_payment(self, order: Order) -> MomoPayment:
        if order.payment_status not in ("unpaid", "failed"):
            raise BusinessRuleError(
                f"This order is already paid or being processed. Payment status: {order.payment_status}"
            )
        if order.payment_method != "momo":
            raise BusinessRuleError("Payment retry is only supported for MoMo orders")
        if order.status_id > OrderStatus.CONFIRMED:
            raise BusinessRuleError("Cannot retry payment for an order that is already being processed")
        return await self.start_payment(order, kind=GatewayOrderKind.RETRY)
