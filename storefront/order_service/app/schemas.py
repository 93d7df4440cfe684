"""Pydantic schemas for the checkout service."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

PaymentMethod = Literal["cod", "bank_transfer", "momo", "zalopay", "vnpay"]
ShippingMethod = Literal["standard", "express", "same_day"]
PaymentStatus = Literal["unpaid", "pending", "paid", "failed", "refunded"]
AddressType = Literal["home", "office", "other"]

_PHONE_PATTERN = re.compile(
    r"^(0|\+84)(\s|\.)?((3[2-9])|(5[689])|(7[06-9])|(8[1-689])|(9[0-46-9]))(\d)(\s|\.)?(\d{3})(\s|\.)?(\d{3})$"
)
_POSTAL_CODE_PATTERN = re.compile(r"^[0-9]{5,10}$")


def _check_phone(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not _PHONE_PATTERN.match(cleaned):
        msg = "Invalid Vietnamese phone number format"
        raise ValueError(msg)
    return cleaned


# Cart -------------------------------------------------------------------------------------
class CartItemCreate(BaseModel):
    product_id: PositiveInt
    quantity: int = Field(default=1, ge=1, le=99)


class CartItemUpdate(BaseModel):
    quantity: int = Field(ge=0, le=99)


class CartProductResponse(BaseModel):
    id: int
    name: str
    slug: str
    price: int
    compare_at_price: int | None
    stock_quantity: int
    primary_image: str | None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class CartItemResponse(BaseModel):
    id: int
    product: CartProductResponse
    quantity: int
    unit_price: int
    subtotal: int


class CartSummary(BaseModel):
    items_count: int
    total_quantity: int
    subtotal: int


class CartResponse(BaseModel):
    id: int
    user_id: int | None
    session_id: str | None
    items: list[CartItemResponse]
    summary: CartSummary
    created_at: datetime
    updated_at: datetime


class CartValidationResponse(BaseModel):
    valid: bool
    errors: list[str]
    cart: CartResponse


# Addresses --------------------------------------------------------------------------------
class AddressCreate(BaseModel):
    recipient_name: str = Field(min_length=2, max_length=255)
    phone: str
    address_line: str = Field(min_length=5, max_length=500)
    city: str = Field(min_length=1, max_length=100)
    district: str | None = Field(default=None, max_length=100)
    ward: str | None = Field(default=None, max_length=100)
    postal_code: str | None = None
    address_type: AddressType = "home"

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        return _check_phone(value) or value

    @field_validator("postal_code")
    @classmethod
    def _validate_postal_code(cls, value: str | None) -> str | None:
        if value is not None and not _POSTAL_CODE_PATTERN.match(value):
            msg = "Postal code must be 5-10 digits"
            raise ValueError(msg)
        return value


class AddressUpdate(BaseModel):
    recipient_name: str | None = Field(default=None, min_length=2, max_length=255)
    phone: str | None = None
    address_line: str | None = Field(default=None, min_length=5, max_length=500)
    city: str | None = Field(default=None, min_length=1, max_length=100)
    district: str | None = Field(default=None, max_length=100)
    ward: str | None = Field(default=None, max_length=100)
    postal_code: str | None = None
    address_type: AddressType | None = None

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str | None) -> str | None:
        return _check_phone(value)


class AddressResponse(BaseModel):
    id: int
    user_id: int
    recipient_name: str
    phone: str
    address_line: str
    city: str
    district: str | None
    ward: str | None
    postal_code: str | None
    address_type: str
    is_default: bool
    full_address: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Orders -----------------------------------------------------------------------------------
class OrderCreate(BaseModel):
    shipping_address_id: PositiveInt
    billing_address_id: PositiveInt | None = None
    payment_method: PaymentMethod
    shipping_method: ShippingMethod = "standard"
    customer_phone: str | None = None
    discount_code: str | None = Field(default=None, max_length=50)
    customer_note: str | None = Field(default=None, max_length=1000)

    @field_validator("customer_phone")
    @classmethod
    def _validate_phone(cls, value: str | None) -> str | None:
        return _check_phone(value)

    @field_validator("discount_code")
    @classmethod
    def _normalize_code(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip().upper()
        return cleaned or None


class OrderStatusUpdate(BaseModel):
    status_id: int = Field(ge=1, le=7)
    note: str | None = Field(default=None, max_length=500)
    tracking_number: str | None = Field(default=None, max_length=100)
    payment_status: PaymentStatus | None = None
    admin_note: str | None = Field(default=None, max_length=1000)


class OrderCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class OrderItemResponse(BaseModel):
    id: int
    product_id: int
    product_name: str
    product_sku: str
    product_image: str | None
    quantity: int
    unit_price: int
    subtotal: int

    model_config = ConfigDict(from_attributes=True)


class OrderHistoryResponse(BaseModel):
    id: int
    status_id: int
    status: str
    note: str | None
    changed_by: int | None
    created_at: datetime


class OrderAddressSnapshot(BaseModel):
    address_id: int | None
    recipient_name: str
    phone: str
    address: str
    city: str


class OrderResponse(BaseModel):
    id: int
    order_number: str
    user_id: int
    status_id: int
    status: str
    customer_name: str
    customer_email: str
    customer_phone: str
    shipping_address: OrderAddressSnapshot
    billing_address: OrderAddressSnapshot
    payment_method: str
    payment_status: str
    paid_at: datetime | None
    momo_trans_id: str | None
    shipping_method: str
    tracking_number: str | None
    shipped_at: datetime | None
    delivered_at: datetime | None
    subtotal: int
    shipping_fee: int
    discount_amount: int
    discount_code: str | None
    tax_amount: int
    total_amount: int
    customer_note: str | None
    admin_note: str | None
    items: list[OrderItemResponse]
    history: list[OrderHistoryResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int


class CheckoutResponse(BaseModel):
    order: OrderResponse
    payment_url: str | None = None
    payment_deeplink: str | None = None
    payment_qr_code: str | None = None


class OrderCancelResponse(BaseModel):
    message: str
    order_number: str


class OrderStatisticsResponse(BaseModel):
    total_orders: int
    pending_orders: int
    processing_orders: int
    delivered_orders: int
    cancelled_orders: int
    total_revenue: int


# Discounts --------------------------------------------------------------------------------
class DiscountValidate(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    order_amount: int = Field(ge=0)
    shipping_method: ShippingMethod | None = None

    @field_validator("code")
    @classmethod
    def _normalise_code(cls, value: str) -> str:
        return value.strip().upper()


class AppliedDiscount(BaseModel):
    id: int
    code: str
    type: str
    discount_amount: int
    final_amount: int


class DiscountValidationResponse(BaseModel):
    valid: bool
    discount: AppliedDiscount


class DiscountUsageEntry(BaseModel):
    code: str
    description: str | None
    type: str
    discount_amount: int
    order_number: str
    order_total: int
    used_at: datetime


class DiscountUsageResponse(BaseModel):
    usage: list[DiscountUsageEntry]


# MoMo -------------------------------------------------------------------------------------
class MomoIpnPayload(BaseModel):
    partner_code: str = Field(alias="partnerCode")
    order_id: str = Field(alias="orderId")
    request_id: str = Field(alias="requestId")
    amount: int
    order_info: str = Field(default="", alias="orderInfo")
    order_type: str = Field(default="", alias="orderType")
    trans_id: int = Field(alias="transId")
    result_code: int = Field(alias="resultCode")
    message: str = ""
    pay_type: str = Field(default="", alias="payType")
    response_time: int = Field(alias="responseTime")
    extra_data: str = Field(default="", alias="extraData")
    signature: str

    model_config = ConfigDict(populate_by_name=True)


class MomoTransactionData(BaseModel):
    order_id: str = Field(alias="orderId")
    amount: int | None = None
    trans_id: int | None = Field(default=None, alias="transId")
    result_code: int = Field(alias="resultCode")
    message: str | None = None
    description: str

    model_config = ConfigDict(populate_by_name=True)


class MomoQueryResponse(BaseModel):
    success: bool
    data: MomoTransactionData


class ResultCodeResponse(BaseModel):
    result_code: int = Field(alias="resultCode")
    description: str

    model_config = ConfigDict(populate_by_name=True)
