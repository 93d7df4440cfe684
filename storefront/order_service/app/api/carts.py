"""API routes for the shopping cart."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, status

from ..carts import CartOwner, CartService
from ..dependencies import get_cart_owner, get_cart_service
from ..errors import ShopError, as_http_exception
from ..models import Cart, Product
from ..schemas import CartItemCreate, CartItemUpdate, CartResponse, CartValidationResponse

router = APIRouter(prefix="/cart", tags=["cart"])


def _serialize_product(product: Product) -> dict[str, object]:
    return {
        "id": product.id,
        "name": product.name,
        "slug": product.slug,
        "price": product.price,
        "compare_at_price": product.compare_at_price,
        "stock_quantity": product.stock_quantity,
        "primary_image": product.primary_image,
        "is_active": product.is_active,
    }


def _serialize_cart(cart: Cart) -> dict[str, object]:
    items = [
        {
            "id": item.id,
            "product": _serialize_product(item.product),
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "subtotal": item.unit_price * item.quantity,
        }
        for item in cart.items
    ]
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "session_id": cart.session_id,
        "items": items,
        "summary": {
            "items_count": len(items),
            "total_quantity": sum(item.quantity for item in cart.items),
            "subtotal": sum(entry["subtotal"] for entry in items),
        },
        "created_at": cart.created_at,
        "updated_at": cart.updated_at,
    }


@router.get("", response_model=CartResponse)
async def get_cart(
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
) -> CartResponse:
    try:
        cart = await service.get_cart(owner)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return CartResponse.model_validate(_serialize_cart(cart))


@router.post("/items", response_model=CartResponse, status_code=status.HTTP_201_CREATED)
async def add_item(
    payload: CartItemCreate,
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
) -> CartResponse:
    try:
        cart = await service.add_item(owner, product_id=payload.product_id, quantity=payload.quantity)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return CartResponse.model_validate(_serialize_cart(cart))


@router.patch("/items/{item_id}", response_model=CartResponse)
async def update_item(
    payload: CartItemUpdate,
    item_id: int = Path(..., ge=1),
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
) -> CartResponse:
    try:
        cart = await service.update_item(owner, item_id, quantity=payload.quantity)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return CartResponse.model_validate(_serialize_cart(cart))


@router.delete("/items/{item_id}", response_model=CartResponse)
async def remove_item(
    item_id: int = Path(..., ge=1),
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
) -> CartResponse:
    try:
        cart = await service.remove_item(owner, item_id)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return CartResponse.model_validate(_serialize_cart(cart))


@router.delete("", response_model=CartResponse)
async def clear_cart(
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
) -> CartResponse:
    try:
        cart = await service.clear(owner)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return CartResponse.model_validate(_serialize_cart(cart))


@router.get("/validate", response_model=CartValidationResponse)
async def validate_cart(
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
) -> CartValidationResponse:
    try:
        result = await service.validate(owner)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return CartValidationResponse.model_validate(
        {"valid": result.valid, "errors": result.errors, "cart": _serialize_cart(result.cart)}
    )


@router.post("/merge", response_model=CartResponse)
async def merge_cart(
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
) -> CartResponse:
    if owner.user_id is None or not owner.session_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Merging requires both X-User-Id and X-Session-Id",
        )
    cart = await service.merge_guest_cart(owner.user_id, owner.session_id)
    return CartResponse.model_validate(_serialize_cart(cart))
