"""Service layer for checkout and the order lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from .addresses import AddressResolver
from .carts import CartValidator, cart_subtotal
from .discounts import DiscountPolicy, NoDiscountPolicy
from .errors import (
    AuthenticationError,
    BusinessRuleError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from .metrics import (
    CHECKOUT_FAILURES_TOTAL,
    ORDER_NUMBER_RETRIES_TOTAL,
    ORDER_STATUS_TRANSITIONS_TOTAL,
    ORDERS_CREATED_TOTAL,
    STOCK_RESTORED_UNITS_TOTAL,
)
from .models import Order, OrderStatus
from .momo import GatewayOrderKind, MomoPayment
from .order_numbers import OrderNumberGenerator
from .payments import PaymentService
from .pricing import compute_pricing, shipping_fee_for
from .repository import AddressRepository, CartRepository, OrderRepository
from .schemas import OrderCreate, OrderStatusUpdate

logger = logging.getLogger(__name__)


def validate_transition(current: OrderStatus, new: OrderStatus) -> None:
    """Raise ``BusinessRuleError`` unless ``current -> new`` is allowed."""

    if current is OrderStatus.CANCELLED:
        raise BusinessRuleError("Cannot change status of cancelled order")
    if current is OrderStatus.RETURNED:
        raise BusinessRuleError("Cannot change status of returned order")
    if current is OrderStatus.DELIVERED and new is not OrderStatus.RETURNED:
        raise BusinessRuleError("Cannot change status of delivered order")
    if new < current and new is not OrderStatus.CANCELLED:
        raise BusinessRuleError("Invalid status transition")


class _OrderNumberTaken(Exception):
    pass


@dataclass(slots=True)
class Checkout:
    order: Order
    payment: MomoPayment | None = None


class OrderService:
    """High-level operations on orders."""

    def __init__(
        self,
        orders: OrderRepository,
        carts: CartRepository,
        addresses: AddressRepository,
        *,
        validator: CartValidator | None = None,
        discounts: DiscountPolicy | None = None,
        numbers: OrderNumberGenerator | None = None,
        payments: PaymentService | None = None,
        max_number_attempts: int = 5,
    ) -> None:
        self.orders = orders
        self.carts = carts
        self.resolver = AddressResolver(addresses)
        self.validator = validator or CartValidator(carts)
        self.discounts = discounts or NoDiscountPolicy()
        self.numbers = numbers or OrderNumberGenerator(orders)
        self.payments = payments
        self.max_number_attempts = max_number_attempts

    # Checkout ---------------------------------------------------------------------------
    async def create_order(self, user_id: int, payload: OrderCreate) -> Checkout:
        order = await self._write_with_retries(user_id, payload)
        ORDERS_CREATED_TOTAL.labels(payment_method=order.payment_method).inc()
        logger.info("Order %s created for user %s (total %s)", order.order_number, user_id, order.total_amount)

        if payload.payment_method != "momo" or self.payments is None:
            return Checkout(order=order)

        # The order must survive a gateway outage, so it is committed before MoMo is called.
        await self.orders.session.commit()
        payment = await self.payments.start_payment(order, kind=GatewayOrderKind.INITIAL)
        return Checkout(order=order, payment=payment)

    async def _write_with_retries(self, user_id: int, payload: OrderCreate) -> Order:
        for attempt in range(self.max_number_attempts):
            try:
                return await self._write_order(user_id, payload, attempt)
            except _OrderNumberTaken as exc:
                ORDER_NUMBER_RETRIES_TOTAL.inc()
                logger.warning("Order number %s already taken (attempt %s); retrying", exc, attempt + 1)
                await self.orders.session.rollback()
        CHECKOUT_FAILURES_TOTAL.labels(reason="order_number").inc()
        raise ConflictError("Could not allocate an order number. Please retry.")

    async def _write_order(self, user_id: int, payload: OrderCreate, attempt: int) -> Order:
        user = await self.orders.get_user(user_id)
        if user is None:
            raise AuthenticationError("User not found")

        # Product rows are re-read here even if the client validated the cart moments ago.
        cart = await self.carts.get_cart(user_id=user_id, fresh=True)
        try:
            validation = await self.validator.validate(cart)
        except BusinessRuleError:
            CHECKOUT_FAILURES_TOTAL.labels(reason="empty_cart").inc()
            raise
        if not validation.valid:
            CHECKOUT_FAILURES_TOTAL.labels(reason="cart_invalid").inc()
            raise BusinessRuleError("Cart validation failed", errors=validation.errors)
        cart = validation.cart

        shipping = await self.resolver.resolve(user_id, payload.shipping_address_id)
        billing = shipping
        if payload.billing_address_id is not None and payload.billing_address_id != shipping.id:
            billing = await self.resolver.resolve(user_id, payload.billing_address_id)

        subtotal = cart_subtotal(cart)
        quote = await self.discounts.quote(
            user_id=user_id,
            code=payload.discount_code,
            subtotal=subtotal,
            shipping_fee=shipping_fee_for(subtotal, payload.shipping_method),
        )
        pricing = compute_pricing(subtotal, payload.shipping_method, discount=quote.amount if quote else 0)

        order_number = await self.numbers.generate(attempt)
        order = Order(
            order_number=order_number,
            user_id=user_id,
            status_id=OrderStatus.PENDING.value,
            customer_name=user.full_name or shipping.recipient_name,
            customer_email=user.email,
            customer_phone=payload.customer_phone or user.phone or shipping.phone,
            shipping_address_id=shipping.id,
            shipping_recipient_name=shipping.recipient_name,
            shipping_phone=shipping.phone,
            shipping_address=shipping.full_address,
            shipping_city=shipping.city,
            shipping_district=shipping.district,
            shipping_ward=shipping.ward,
            shipping_postal_code=shipping.postal_code,
            billing_address_id=billing.id,
            billing_recipient_name=billing.recipient_name,
            billing_phone=billing.phone,
            billing_address=billing.full_address,
            billing_city=billing.city,
            payment_method=payload.payment_method,
            payment_status="unpaid",
            shipping_method=payload.shipping_method,
            subtotal=pricing.subtotal,
            shipping_fee=pricing.shipping_fee,
            discount_amount=pricing.discount_amount,
            discount_code=quote.code if quote else None,
            tax_amount=pricing.tax_amount,
            total_amount=pricing.total_amount,
            customer_note=payload.customer_note,
        )
        try:
            await self.orders.add_order(order)
        except IntegrityError as exc:
            if "order_number" not in str(exc.orig):
                raise
            raise _OrderNumberTaken(order_number) from exc

        for item in cart.items:
            product = item.product
            await self.orders.add_item(
                order,
                product_id=product.id,
                product_name=product.name,
                product_sku=product.sku,
                product_image=product.primary_image,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=item.unit_price * item.quantity,
            )
            if not await self.orders.decrement_stock(product.id, item.quantity):
                CHECKOUT_FAILURES_TOTAL.labels(reason="insufficient_stock").inc()
                raise BusinessRuleError(
                    f'Insufficient stock for "{product.name}"',
                    errors=[f'Product "{product.name}" has insufficient stock'],
                )

        await self.orders.add_history(
            order, status_id=OrderStatus.PENDING, note="Order created", changed_by=user_id
        )
        if quote is not None:
            await self.discounts.record(quote, user_id=user_id, order_id=order.id)
        await self.carts.clear_items(cart)
        return await self.orders.reload(order)

    # Reads ------------------------------------------------------------------------------
    async def get_order(self, user_id: int, order_id: int, *, is_admin: bool = False) -> Order:
        order = await self.orders.get_order(order_id)
        return self._check_access(order, user_id, is_admin=is_admin)

    async def get_by_number(self, user_id: int, order_number: str, *, is_admin: bool = False) -> Order:
        order = await self.orders.get_by_number(order_number)
        return self._check_access(order, user_id, is_admin=is_admin)

    @staticmethod
    def _check_access(order: Order | None, user_id: int, *, is_admin: bool) -> Order:
        if order is None:
            raise NotFoundError("Order not found")
        if not is_admin and order.user_id != user_id:
            raise ForbiddenError("You do not have permission to view this order")
        return order

    # Lifecycle --------------------------------------------------------------------------
    async def update_status(self, order_id: int, payload: OrderStatusUpdate, *, actor_id: int) -> Order:
        order = await self.orders.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        order = await self.transition(
            order,
            OrderStatus(payload.status_id),
            note=payload.note or "Status updated",
            actor_id=actor_id,
            tracking_number=payload.tracking_number,
            payment_status=payload.payment_status,
            admin_note=payload.admin_note,
        )
        logger.info("Order %s status updated to %s by admin %s", order.order_number, payload.status_id, actor_id)
        return order

    async def cancel(self, user_id: int, order_id: int, reason: str | None = None) -> Order:
        order = await self.orders.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.user_id != user_id:
            raise ForbiddenError("You do not have permission to cancel this order")
        if order.status_id > OrderStatus.CONFIRMED:
            raise BusinessRuleError("Order cannot be cancelled at this stage. Please contact support.")
        return await self.transition(
            order, OrderStatus.CANCELLED, note=reason or "Cancelled by customer", actor_id=user_id
        )

    async def transition(
        self,
        order: Order,
        new_status: OrderStatus,
        *,
        note: str,
        actor_id: int | None,
        tracking_number: str | None = None,
        payment_status: str | None = None,
        admin_note: str | None = None,
    ) -> Order:
        validate_transition(order.status, new_status)

        now = datetime.now(timezone.utc)
        order.status_id = new_status.value
        if new_status is OrderStatus.SHIPPED and order.shipped_at is None:
            order.shipped_at = now
        if new_status is OrderStatus.DELIVERED and order.delivered_at is None:
            order.delivered_at = now
        if tracking_number is not None:
            order.tracking_number = tracking_number
        if payment_status is not None:
            order.payment_status = payment_status
        if admin_note is not None:
            order.admin_note = admin_note

        await self.orders.add_history(order, status_id=new_status, note=note, changed_by=actor_id)

        if new_status is OrderStatus.CANCELLED:
            restored = 0
            for item in order.items:
                await self.orders.restore_stock(item.product_id, item.quantity)
                restored += item.quantity
            STOCK_RESTORED_UNITS_TOTAL.inc(restored)
            logger.info("Restored %s units of stock for cancelled order %s", restored, order.order_number)

        ORDER_STATUS_TRANSITIONS_TOTAL.labels(status=new_status.label.lower()).inc()
        return await self.orders.reload(order)

    async def retry_payment(self, user_id: int, order_id: int) -> Checkout:
        if self.payments is None:  # pragma: no cover - wired in by the API layer
            raise BusinessRuleError("Online payment is not available")
        order = await self.orders.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise NotFoundError("Order not found or does not belong to you")
        payment = await self.payments.retry_payment(order)
        logger.info("Retry payment created for order %s: %s", order.order_number, payment.order_id)
        return Checkout(order=await self.orders.reload(order), payment=payment)

    async def list_orders(
        self,
        *,
        user_id: int | None,
        status_id: int | None,
        search: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[Order], int]:
        return await self.orders.list_orders(
            user_id=user_id, status_id=status_id, search=search, limit=limit, offset=offset
        )

    async def statistics(self) -> dict[str, int]:
        return await self.orders.statistics()
