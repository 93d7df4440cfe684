"""Dependency helpers for the checkout service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import ServiceSettings, lifespan_session

from .addresses import AddressService
from .carts import CartOwner, CartService, CartValidator
from .discounts import CodeDiscountPolicy, DiscountPolicy, DiscountService, NoDiscountPolicy
from .momo import MomoClient
from .notifications import PaymentNotifier
from .payments import PaymentReconciler, PaymentService
from .repository import AddressRepository, CartRepository, DiscountRepository, OrderRepository
from .services import OrderService


@dataclass(frozen=True, slots=True)
class Principal:
    """Caller identity forwarded by the upstream authentication layer."""

    user_id: int
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an AsyncSession for the current request lifecycle."""

    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_app_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_principal(
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return Principal(user_id=x_user_id, role=(x_user_role or "customer").lower())


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return principal


def get_cart_owner(
    x_user_id: int | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
) -> CartOwner:
    return CartOwner(user_id=x_user_id, session_id=x_session_id)


def get_order_repository(session: AsyncSession = Depends(get_session)) -> OrderRepository:
    return OrderRepository(session)


def get_cart_repository(session: AsyncSession = Depends(get_session)) -> CartRepository:
    return CartRepository(session)


def get_address_repository(session: AsyncSession = Depends(get_session)) -> AddressRepository:
    return AddressRepository(session)


def get_cart_validator(carts: CartRepository = Depends(get_cart_repository)) -> CartValidator:
    return CartValidator(carts)


def get_cart_service(carts: CartRepository = Depends(get_cart_repository)) -> CartService:
    return CartService(carts)


def get_address_service(
    addresses: AddressRepository = Depends(get_address_repository),
    orders: OrderRepository = Depends(get_order_repository),
) -> AddressService:
    return AddressService(addresses, orders)


def get_discount_policy(
    session: AsyncSession = Depends(get_session),
    settings: ServiceSettings = Depends(get_app_settings),
) -> DiscountPolicy:
    if settings.discount_codes_enabled:
        return CodeDiscountPolicy(DiscountRepository(session))
    return NoDiscountPolicy()


def get_discount_service(
    session: AsyncSession = Depends(get_session),
    settings: ServiceSettings = Depends(get_app_settings),
) -> DiscountService:
    return DiscountService(DiscountRepository(session), enabled=settings.discount_codes_enabled)


def get_momo_client(request: Request) -> MomoClient:
    return request.app.state.momo_client


def get_payment_service(
    orders: OrderRepository = Depends(get_order_repository),
    gateway: MomoClient = Depends(get_momo_client),
) -> PaymentService:
    return PaymentService(orders, gateway)


def get_payment_reconciler(
    request: Request,
    orders: OrderRepository = Depends(get_order_repository),
) -> PaymentReconciler:
    return PaymentReconciler(orders, PaymentNotifier(getattr(request.app.state, "email_provider", None)))


def get_order_service(
    orders: OrderRepository = Depends(get_order_repository),
    carts: CartRepository = Depends(get_cart_repository),
    addresses: AddressRepository = Depends(get_address_repository),
    validator: CartValidator = Depends(get_cart_validator),
    discounts: DiscountPolicy = Depends(get_discount_policy),
    payments: PaymentService = Depends(get_payment_service),
    settings: ServiceSettings = Depends(get_app_settings),
) -> OrderService:
    return OrderService(
        orders,
        carts,
        addresses,
        validator=validator,
        discounts=discounts,
        payments=payments,
        max_number_attempts=settings.order_number_max_attempts,
    )
