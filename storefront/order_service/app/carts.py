"""Cart operations and the pre-checkout cart validator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import AuthenticationError, BusinessRuleError, NotFoundError
from .models import Cart
from .repository import CartRepository

logger = logging.getLogger(__name__)

MAX_ITEM_QUANTITY = 99


@dataclass(frozen=True, slots=True)
class CartOwner:
    """A cart belongs to a signed-in user or, failing that, to a guest session."""

    user_id: int | None = None
    session_id: str | None = None

    def require(self) -> None:
        if self.user_id is None and not self.session_id:
            raise AuthenticationError("Must be authenticated or have valid session")


@dataclass(slots=True)
class CartValidation:
    valid: bool
    cart: Cart
    errors: list[str] = field(default_factory=list)


class CartValidator:
    """Re-reads every product behind a cart and reports what would block checkout."""

    def __init__(self, repository: CartRepository) -> None:
        self.repository = repository

    async def validate(self, cart: Cart | None) -> CartValidation:
        if cart is None or not cart.items:
            raise BusinessRuleError("Cart is empty")

        errors: list[str] = []
        for item in cart.items:
            product = await self.repository.get_product(item.product_id, fresh=True)
            if product is None:
                errors.append(f'Product #{item.product_id} no longer exists')
                continue
            if not product.is_active:
                errors.append(f'Product "{product.name}" is no longer available')
                continue
            if product.stock_quantity < item.quantity:
                errors.append(
                    f'Product "{product.name}" has insufficient stock '
                    f"(available: {product.stock_quantity}, requested: {item.quantity})"
                )
                continue
            if product.effective_price != item.unit_price:
                errors.append(
                    f'Product "{product.name}" price has changed '
                    f"(was {item.unit_price}, now {product.effective_price})"
                )
        return CartValidation(valid=not errors, cart=cart, errors=errors)


class CartService:
    """Add, change and remove cart lines for a user or guest session."""

    def __init__(self, repository: CartRepository) -> None:
        self.repository = repository

    async def get_cart(self, owner: CartOwner) -> Cart:
        owner.require()
        return await self.repository.get_or_create_cart(user_id=owner.user_id, session_id=owner.session_id)

    async def add_item(self, owner: CartOwner, *, product_id: int, quantity: int) -> Cart:
        owner.require()
        product = await self.repository.get_product(product_id, fresh=True)
        if product is None:
            raise NotFoundError(f"Product with ID {product_id} not found")
        if not product.is_active:
            raise BusinessRuleError("Product is not available for purchase")
        if product.stock_quantity < quantity:
            raise BusinessRuleError(f"Insufficient stock. Available: {product.stock_quantity}")

        cart = await self.get_cart(owner)
        existing = next((item for item in cart.items if item.product_id == product_id), None)
        if existing is None:
            await self.repository.add_item(
                cart, product=product, quantity=quantity, unit_price=product.effective_price
            )
            logger.info("Added product %s to cart %s", product_id, cart.id)
        else:
            new_quantity = existing.quantity + quantity
            if new_quantity > product.stock_quantity:
                raise BusinessRuleError(
                    f"Cannot add {quantity} more. Stock limit: {product.stock_quantity}, "
                    f"current in cart: {existing.quantity}"
                )
            if new_quantity > MAX_ITEM_QUANTITY:
                raise BusinessRuleError(f"Maximum quantity per item is {MAX_ITEM_QUANTITY}")
            existing.quantity = new_quantity
            existing.unit_price = product.effective_price
            logger.info("Updated cart item %s quantity to %s", existing.id, new_quantity)
        return await self.repository.reload(cart)

    async def update_item(self, owner: CartOwner, item_id: int, *, quantity: int) -> Cart:
        cart = await self.get_cart(owner)
        item = await self.repository.get_item(cart, item_id)
        if item is None:
            raise NotFoundError("Cart item not found")

        if quantity == 0:
            await self.repository.delete_item(item)
            logger.info("Removed cart item %s", item_id)
            return await self.repository.reload(cart)

        product = await self.repository.get_product(item.product_id, fresh=True)
        if product is None or not product.is_active:
            raise BusinessRuleError("Product is no longer available")
        if quantity > product.stock_quantity:
            raise BusinessRuleError(f"Insufficient stock. Available: {product.stock_quantity}")
        item.quantity = quantity
        return await self.repository.reload(cart)

    async def remove_item(self, owner: CartOwner, item_id: int) -> Cart:
        cart = await self.get_cart(owner)
        item = await self.repository.get_item(cart, item_id)
        if item is None:
            raise NotFoundError("Cart item not found")
        await self.repository.delete_item(item)
        logger.info("Removed cart item %s", item_id)
        return await self.repository.reload(cart)

    async def validate(self, owner: CartOwner) -> CartValidation:
        owner.require()
        cart = await self.repository.get_cart(user_id=owner.user_id, session_id=owner.session_id, fresh=True)
        return await CartValidator(self.repository).validate(cart)

    async def clear(self, owner: CartOwner) -> Cart:
        cart = await self.get_cart(owner)
        if cart.items:
            await self.repository.clear_items(cart)
            logger.info("Cleared cart %s", cart.id)
        return await self.repository.reload(cart)

    async def merge_guest_cart(self, user_id: int, session_id: str) -> Cart:
        """Fold the guest session's cart into the user's cart after sign-in."""

        guest = await self.repository.get_cart(session_id=session_id)
        if guest is None or not guest.items:
            logger.info("No guest cart to merge for session %s", session_id)
            return await self.get_cart(CartOwner(user_id=user_id))

        user_cart = await self.repository.get_cart(user_id=user_id)
        if user_cart is None:
            guest.user_id = user_id
            guest.session_id = None
            logger.info("Converted guest cart %s to user cart for user %s", guest.id, user_id)
            return await self.repository.reload(guest)

        for guest_item in guest.items:
            product = await self.repository.get_product(guest_item.product_id, fresh=True)
            if product is None or not product.is_active or product.stock_quantity < guest_item.quantity:
                logger.warning("Skipping product %s - not available", guest_item.product_id)
                continue
            existing = next((item for item in user_cart.items if item.product_id == product.id), None)
            if existing is not None:
                existing.quantity = min(
                    existing.quantity + guest_item.quantity, product.stock_quantity, MAX_ITEM_QUANTITY
                )
            else:
                await self.repository.add_item(
                    user_cart,
                    product=product,
                    quantity=min(guest_item.quantity, product.stock_quantity, MAX_ITEM_QUANTITY),
                    unit_price=guest_item.unit_price,
                )

        await self.repository.delete_cart(guest)
        logger.info("Merged guest cart %s into user cart %s", guest.id, user_cart.id)
        return await self.repository.reload(user_cart)


def cart_subtotal(cart: Cart) -> int:
    return sum(item.unit_price * item.quantity for item in cart.items)
