"""API routes for checking discount codes before checkout."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..dependencies import Principal, get_discount_service, get_principal
from ..discounts import DiscountService
from ..errors import ShopError, as_http_exception
from ..schemas import (
    AppliedDiscount,
    DiscountUsageEntry,
    DiscountUsageResponse,
    DiscountValidate,
    DiscountValidationResponse,
)

router = APIRouter(prefix="/discounts", tags=["discounts"])


@router.post("/validate", response_model=DiscountValidationResponse, status_code=status.HTTP_200_OK)
async def validate_discount(
    payload: DiscountValidate,
    principal: Principal = Depends(get_principal),
    service: DiscountService = Depends(get_discount_service),
) -> DiscountValidationResponse:
    """Price a code against the cart subtotal without reserving a use of it."""

    try:
        preview = await service.preview(principal.user_id, payload)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return DiscountValidationResponse(
        valid=True,
        discount=AppliedDiscount(
            id=preview.discount.id,
            code=preview.discount.code,
            type=preview.discount.discount_type,
            discount_amount=preview.amount,
            final_amount=preview.final_amount,
        ),
    )


@router.get("/my-usage", response_model=DiscountUsageResponse)
async def my_discount_usage(
    principal: Principal = Depends(get_principal),
    service: DiscountService = Depends(get_discount_service),
) -> DiscountUsageResponse:
    rows = await service.usage(principal.user_id)
    return DiscountUsageResponse(
        usage=[
            DiscountUsageEntry(
                code=discount.code,
                description=discount.description,
                type=discount.discount_type,
                discount_amount=usage.discount_amount,
                order_number=order.order_number,
                order_total=order.total_amount,
                used_at=usage.used_at,
            )
            for usage, discount, order in rows
        ]
    )
