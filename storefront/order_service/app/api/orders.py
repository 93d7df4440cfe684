"""HTTP routes for checkout and order management."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query, status

from ..dependencies import Principal, get_order_service, get_principal, require_admin
from ..errors import ShopError, as_http_exception
from ..models import Order, OrderStatus
from ..schemas import (
    CheckoutResponse,
    OrderCancel,
    OrderCancelResponse,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    OrderStatisticsResponse,
    OrderStatusUpdate,
)
from ..services import Checkout, OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


def _serialize_order(order: Order) -> dict[str, object]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "status_id": order.status_id,
        "status": order.status.label,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "shipping_address": {
            "address_id": order.shipping_address_id,
            "recipient_name": order.shipping_recipient_name,
            "phone": order.shipping_phone,
            "address": order.shipping_address,
            "city": order.shipping_city,
        },
        "billing_address": {
            "address_id": order.billing_address_id,
            "recipient_name": order.billing_recipient_name,
            "phone": order.billing_phone,
            "address": order.billing_address,
            "city": order.billing_city,
        },
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "paid_at": order.paid_at,
        "momo_trans_id": order.momo_trans_id,
        "shipping_method": order.shipping_method,
        "tracking_number": order.tracking_number,
        "shipped_at": order.shipped_at,
        "delivered_at": order.delivered_at,
        "subtotal": order.subtotal,
        "shipping_fee": order.shipping_fee,
        "discount_amount": order.discount_amount,
        "discount_code": order.discount_code,
        "tax_amount": order.tax_amount,
        "total_amount": order.total_amount,
        "customer_note": order.customer_note,
        "admin_note": order.admin_note,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "product_name": item.product_name,
                "product_sku": item.product_sku,
                "product_image": item.product_image,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "subtotal": item.subtotal,
            }
            for item in order.items
        ],
        "history": [
            {
                "id": entry.id,
                "status_id": entry.status_id,
                "status": OrderStatus(entry.status_id).label,
                "note": entry.note,
                "changed_by": entry.changed_by,
                "created_at": entry.created_at,
            }
            for entry in order.history
        ],
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


def _serialize_checkout(checkout: Checkout) -> dict[str, object]:
    payment = checkout.payment
    return {
        "order": _serialize_order(checkout.order),
        "payment_url": payment.pay_url if payment else None,
        "payment_deeplink": payment.deeplink if payment else None,
        "payment_qr_code": payment.qr_code_url if payment else None,
    }


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    principal: Principal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
) -> CheckoutResponse:
    try:
        checkout = await service.create_order(principal.user_id, payload)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return CheckoutResponse.model_validate(_serialize_checkout(checkout))


@router.get("", response_model=OrderListResponse)
async def list_my_orders(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status_id: int | None = Query(default=None, ge=1, le=7),
    principal: Principal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    orders, total = await service.list_orders(
        user_id=principal.user_id, status_id=status_id, search=None, limit=limit, offset=offset
    )
    items = [OrderResponse.model_validate(_serialize_order(order)) for order in orders]
    return OrderListResponse(items=items, total=total)


@router.get("/admin/all", response_model=OrderListResponse)
async def list_all_orders(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status_id: int | None = Query(default=None, ge=1, le=7),
    search: str | None = Query(default=None, max_length=100),
    _: Principal = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    orders, total = await service.list_orders(
        user_id=None, status_id=status_id, search=search, limit=limit, offset=offset
    )
    items = [OrderResponse.model_validate(_serialize_order(order)) for order in orders]
    return OrderListResponse(items=items, total=total)


@router.get("/admin/statistics", response_model=OrderStatisticsResponse)
async def order_statistics(
    _: Principal = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
) -> OrderStatisticsResponse:
    return OrderStatisticsResponse.model_validate(await service.statistics())


@router.get("/number/{order_number}", response_model=OrderResponse)
async def get_order_by_number(
    order_number: str = Path(..., min_length=1, max_length=32),
    principal: Principal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        order = await service.get_by_number(principal.user_id, order_number, is_admin=principal.is_admin)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return OrderResponse.model_validate(_serialize_order(order))


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        order = await service.get_order(principal.user_id, order_id, is_admin=principal.is_admin)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return OrderResponse.model_validate(_serialize_order(order))


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    payload: OrderStatusUpdate,
    order_id: int = Path(..., ge=1),
    admin: Principal = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        order = await service.update_status(order_id, payload, actor_id=admin.user_id)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return OrderResponse.model_validate(_serialize_order(order))


@router.patch("/{order_id}/cancel", response_model=OrderCancelResponse)
async def cancel_order(
    payload: OrderCancel | None = None,
    order_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
) -> OrderCancelResponse:
    try:
        order = await service.cancel(principal.user_id, order_id, payload.reason if payload else None)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return OrderCancelResponse(message="Order cancelled successfully", order_number=order.order_number)


@router.post("/{order_id}/retry-payment", response_model=CheckoutResponse)
async def retry_payment(
    order_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_principal),
    service: OrderService = Depends(get_order_service),
) -> CheckoutResponse:
    try:
        checkout = await service.retry_payment(principal.user_id, order_id)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return CheckoutResponse.model_validate(_serialize_checkout(checkout))
