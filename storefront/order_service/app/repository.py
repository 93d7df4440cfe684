"""Data access helpers for the checkout service."""

from __future__ import annotations

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import (
    Address,
    Cart,
    CartItem,
    DiscountCode,
    DiscountUsage,
    Order,
    OrderHistory,
    OrderItem,
    OrderStatus,
    Product,
    User,
)


class CartRepository:
    """Persistence helpers for carts, their items and the products they point at."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_cart(
        self,
        *,
        user_id: int | None = None,
        session_id: str | None = None,
        fresh: bool = False,
    ) -> Cart | None:
        stmt = select(Cart).options(selectinload(Cart.items).selectinload(CartItem.product))
        if user_id is not None:
            stmt = stmt.where(Cart.user_id == user_id)
        elif session_id is not None:
            stmt = stmt.where(Cart.session_id == session_id)
        else:
            return None
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_cart(self, *, user_id: int | None = None, session_id: str | None = None) -> Cart:
        cart = await self.get_cart(user_id=user_id, session_id=session_id)
        if cart is not None:
            return cart
        cart = Cart(user_id=user_id, session_id=None if user_id is not None else session_id)
        self.session.add(cart)
        await self.session.flush()
        await self.session.refresh(cart, attribute_names=["items", "created_at", "updated_at"])
        return cart

    async def get_product(self, product_id: int, *, fresh: bool = False) -> Product | None:
        return await self.session.get(Product, product_id, populate_existing=fresh)

    async def get_item(self, cart: Cart, item_id: int) -> CartItem | None:
        result = await self.session.execute(
            select(CartItem).where(and_(CartItem.id == item_id, CartItem.cart_id == cart.id))
        )
        return result.scalar_one_or_none()

    async def add_item(self, cart: Cart, *, product: Product, quantity: int, unit_price: int) -> CartItem:
        item = CartItem(cart=cart, product=product, quantity=quantity, unit_price=unit_price)
        self.session.add(item)
        await self.session.flush()
        return item

    async def delete_item(self, item: CartItem) -> None:
        await self.session.delete(item)
        await self.session.flush()

    async def clear_items(self, cart: Cart) -> None:
        await self.session.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
        await self.session.flush()

    async def reload(self, cart: Cart) -> Cart:
        await self.session.flush()
        await self.session.refresh(cart, attribute_names=["items", "updated_at"])
        return cart

    async def delete_cart(self, cart: Cart) -> None:
        await self.session.delete(cart)
        await self.session.flush()


class AddressRepository:
    """Persistence helpers for customer addresses."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_address(self, address_id: int) -> Address | None:
        return await self.session.get(Address, address_id)

    async def list_addresses(self, user_id: int) -> list[Address]:
        result = await self.session.execute(
            select(Address)
            .where(Address.user_id == user_id)
            .order_by(Address.is_default.desc(), Address.created_at.desc(), Address.id.desc())
        )
        return list(result.scalars())

    async def count_addresses(self, user_id: int) -> int:
        result = await self.session.execute(select(func.count(Address.id)).where(Address.user_id == user_id))
        return result.scalar_one()

    async def get_default(self, user_id: int) -> Address | None:
        result = await self.session.execute(
            select(Address).where(and_(Address.user_id == user_id, Address.is_default.is_(True)))
        )
        return result.scalars().first()

    async def most_recent(self, user_id: int) -> Address | None:
        result = await self.session.execute(
            select(Address)
            .where(Address.user_id == user_id)
            .order_by(Address.created_at.desc(), Address.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def clear_default(self, user_id: int) -> None:
        await self.session.execute(
            update(Address)
            .where(and_(Address.user_id == user_id, Address.is_default.is_(True)))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )

    async def create_address(self, address: Address) -> Address:
        self.session.add(address)
        await self.session.flush()
        await self.session.refresh(address, attribute_names=["created_at", "updated_at"])
        return address

    async def save(self, address: Address) -> Address:
        await self.session.flush()
        await self.session.refresh(address, attribute_names=["updated_at"])
        return address

    async def delete_address(self, address: Address) -> None:
        await self.session.delete(address)
        await self.session.flush()


class OrderRepository:
    """Persistence helpers for orders and related entities."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_user(self, user_id: int) -> User | None:
        return await self.session.get(User, user_id)

    async def count_orders_with_prefix(self, prefix: str) -> int:
        result = await self.session.execute(
            select(func.count(Order.id)).where(Order.order_number.like(f"{prefix}%"))
        )
        return result.scalar_one()

    async def add_order(self, order: Order) -> Order:
        self.session.add(order)
        await self.session.flush()
        return order

    async def add_item(self, order: Order, **snapshot: object) -> None:
        self.session.add(OrderItem(order_id=order.id, **snapshot))

    async def add_history(
        self,
        order: Order,
        *,
        status_id: int,
        note: str | None,
        changed_by: int | None,
    ) -> OrderHistory:
        entry = OrderHistory(order_id=order.id, status_id=status_id, note=note, changed_by=changed_by)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def decrement_stock(self, product_id: int, quantity: int) -> bool:
        """Take ``quantity`` units if and only if that many are on hand."""

        result = await self.session.execute(
            update(Product)
            .where(and_(Product.id == product_id, Product.stock_quantity >= quantity))
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def restore_stock(self, product_id: int, quantity: int) -> None:
        await self.session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )

    async def apply_payment_result(
        self,
        order: Order,
        *,
        values: dict[str, object],
        require_unverified: bool,
    ) -> bool:
        """Write a payment result unless the order got paid (or verified) meanwhile."""

        conditions = [Order.id == order.id, Order.payment_status != "paid"]
        if require_unverified:
            conditions.append(Order.payment_verified.is_(False))
        result = await self.session.execute(
            update(Order)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.session.refresh(order)
        return True

    async def get_order(self, order_id: int, *, fresh: bool = False) -> Order | None:
        stmt = (
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.history))
            .where(Order.id == order_id)
        )
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_number(self, order_number: str) -> Order | None:
        result = await self.session.execute(
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.history))
            .where(Order.order_number == order_number)
        )
        return result.scalar_one_or_none()

    async def reload(self, order: Order) -> Order:
        await self.session.flush()
        await self.session.refresh(order, attribute_names=["items", "history", "created_at", "updated_at"])
        return order

    async def list_orders(
        self,
        *,
        user_id: int | None,
        status_id: int | None,
        search: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[Order], int]:
        base: Select[tuple[Order]] = select(Order)
        count: Select[tuple[int]] = select(func.count(func.distinct(Order.id)))

        filters = []
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if status_id is not None:
            filters.append(Order.status_id == status_id)
        if search:
            pattern = f"%{search}%"
            filters.append(
                or_(
                    Order.order_number.ilike(pattern),
                    Order.customer_name.ilike(pattern),
                    Order.customer_email.ilike(pattern),
                    Order.customer_phone.ilike(pattern),
                )
            )

        if filters:
            base = base.where(and_(*filters))
            count = count.where(and_(*filters))

        base = base.order_by(Order.created_at.desc(), Order.id.desc())

        total_result = await self.session.execute(count)
        total = total_result.scalar_one()

        result = await self.session.execute(
            base.options(selectinload(Order.items)).offset(offset).limit(limit)
        )
        orders = list(result.scalars().unique())
        return orders, total

    async def statistics(self) -> dict[str, int]:
        def _count(*conditions):
            stmt = select(func.count(Order.id))
            if conditions:
                stmt = stmt.where(*conditions)
            return stmt

        total = (await self.session.execute(_count())).scalar_one()
        pending = (await self.session.execute(_count(Order.status_id == OrderStatus.PENDING))).scalar_one()
        processing = (
            await self.session.execute(
                _count(
                    Order.status_id.in_(
                        [OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED]
                    )
                )
            )
        ).scalar_one()
        delivered = (await self.session.execute(_count(Order.status_id == OrderStatus.DELIVERED))).scalar_one()
        cancelled = (await self.session.execute(_count(Order.status_id == OrderStatus.CANCELLED))).scalar_one()
        revenue = (
            await self.session.execute(
                select(func.coalesce(func.sum(Order.total_amount), 0)).where(
                    Order.status_id.not_in([OrderStatus.CANCELLED, OrderStatus.RETURNED])
                )
            )
        ).scalar_one()
        return {
            "total_orders": total,
            "pending_orders": pending,
            "processing_orders": processing,
            "delivered_orders": delivered,
            "cancelled_orders": cancelled,
            "total_revenue": int(revenue),
        }


class DiscountRepository:
    """Persistence helpers for discount codes and their usage ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_code(self, code: str) -> DiscountCode | None:
        result = await self.session.execute(select(DiscountCode).where(DiscountCode.code == code.upper()))
        return result.scalar_one_or_none()

    async def count_user_usages(self, discount_id: int, user_id: int) -> int:
        result = await self.session.execute(
            select(func.count(DiscountUsage.id)).where(
                and_(DiscountUsage.discount_id == discount_id, DiscountUsage.user_id == user_id)
            )
        )
        return result.scalar_one()

    async def record_usage(self, discount: DiscountCode, *, user_id: int, order_id: int, amount: int) -> None:
        self.session.add(
            DiscountUsage(discount_id=discount.id, user_id=user_id, order_id=order_id, discount_amount=amount)
        )
        await self.session.execute(
            update(DiscountCode)
            .where(DiscountCode.id == discount.id)
            .values(used_count=DiscountCode.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

    async def list_user_usage(self, user_id: int) -> list[tuple[DiscountUsage, DiscountCode, Order]]:
        result = await self.session.execute(
            select(DiscountUsage, DiscountCode, Order)
            .join(DiscountCode, DiscountCode.id == DiscountUsage.discount_id)
            .join(Order, Order.id == DiscountUsage.order_id)
            .where(DiscountUsage.user_id == user_id)
            .order_by(DiscountUsage.used_at.desc(), DiscountUsage.id.desc())
        )
        return [tuple(row) for row in result.all()]
