"""Prometheus metrics for the checkout service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

# Checkout ---------------------------------------------------------------------------------
ORDERS_CREATED_TOTAL: Final = Counter(
    "storefront_orders_created_total",
    "Orders committed by checkout.",
    labelnames=("payment_method",),
)

CHECKOUT_FAILURES_TOTAL: Final = Counter(
    "storefront_checkout_failures_total",
    "Checkout attempts rejected before an order was committed.",
    labelnames=("reason",),
)

ORDER_NUMBER_RETRIES_TOTAL: Final = Counter(
    "storefront_order_number_retries_total",
    "Order inserts retried because the proposed order number was already taken.",
)

DISCOUNT_REJECTED_TOTAL: Final = Counter(
    "storefront_discount_rejected_total",
    "Discount codes ignored at checkout because they failed validation.",
)

# Order lifecycle --------------------------------------------------------------------------
ORDER_STATUS_TRANSITIONS_TOTAL: Final = Counter(
    "storefront_order_status_transitions_total",
    "Applied order status transitions by target status.",
    labelnames=("status",),
)

STOCK_RESTORED_UNITS_TOTAL: Final = Counter(
    "storefront_stock_restored_units_total",
    "Units returned to stock by order cancellation.",
)

# Payments ---------------------------------------------------------------------------------
PAYMENT_CALLBACKS_TOTAL: Final = Counter(
    "storefront_payment_callbacks_total",
    "Gateway callbacks handled, by source (ipn/return) and outcome.",
    labelnames=("source", "outcome"),
)

GATEWAY_REQUEST_SECONDS: Final = Histogram(
    "storefront_gateway_request_seconds",
    "Latency of calls to the MoMo gateway.",
    labelnames=("operation",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

GATEWAY_FAILURES_TOTAL: Final = Counter(
    "storefront_gateway_failures_total",
    "MoMo gateway calls that failed, by operation and kind (rejected/unavailable).",
    labelnames=("operation", "kind"),
)

PAYMENT_EMAIL_FAILURES_TOTAL: Final = Counter(
    "storefront_payment_email_failures_total",
    "Payment confirmation e-mails that could not be handed to the provider.",
)
