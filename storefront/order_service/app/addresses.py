"""Address book operations and the checkout address ownership check."""

from __future__ import annotations

import logging

from .errors import AuthenticationError, ForbiddenError, NotFoundError
from .models import Address
from .repository import AddressRepository, OrderRepository
from .schemas import AddressCreate, AddressUpdate

logger = logging.getLogger(__name__)


class AddressResolver:
    """Confirms an address belongs to the caller before an order may use it."""

    def __init__(self, repository: AddressRepository) -> None:
        self.repository = repository

    async def resolve(self, user_id: int, address_id: int) -> Address:
        address = await self.repository.get_address(address_id)
        if address is None:
            raise NotFoundError("Address not found")
        if address.user_id != user_id:
            raise ForbiddenError("You do not have permission to access this address")
        return address


class AddressService:
    def __init__(self, repository: AddressRepository, orders: OrderRepository) -> None:
        self.repository = repository
        self.orders = orders
        self.resolver = AddressResolver(repository)

    async def create_address(self, user_id: int, payload: AddressCreate) -> Address:
        if await self.orders.get_user(user_id) is None:
            raise AuthenticationError("User not found")

        # The first address a user saves becomes their default.
        is_first = await self.repository.count_addresses(user_id) == 0
        address = Address(
            user_id=user_id,
            recipient_name=payload.recipient_name,
            phone=payload.phone,
            address_line=payload.address_line,
            city=payload.city,
            district=payload.district,
            ward=payload.ward,
            postal_code=payload.postal_code,
            address_type=payload.address_type,
            is_default=is_first,
        )
        address = await self.repository.create_address(address)
        logger.info("Created address %s for user %s", address.id, user_id)
        return address

    async def list_addresses(self, user_id: int) -> list[Address]:
        return await self.repository.list_addresses(user_id)

    async def get_address(self, user_id: int, address_id: int) -> Address:
        return await self.resolver.resolve(user_id, address_id)

    async def get_default(self, user_id: int) -> Address:
        address = await self.repository.get_default(user_id)
        if address is None:
            raise NotFoundError("No default address found")
        return address

    async def update_address(self, user_id: int, address_id: int, payload: AddressUpdate) -> Address:
        address = await self.resolver.resolve(user_id, address_id)
        for name, value in payload.model_dump(exclude_unset=True).items():
            setattr(address, name, value)
        address = await self.repository.save(address)
        logger.info("Updated address %s for user %s", address_id, user_id)
        return address

    async def set_default(self, user_id: int, address_id: int) -> Address:
        address = await self.resolver.resolve(user_id, address_id)
        if address.is_default:
            return address
        await self.repository.clear_default(user_id)
        address.is_default = True
        address = await self.repository.save(address)
        logger.info("Set address %s as default for user %s", address_id, user_id)
        return address

    async def delete_address(self, user_id: int, address_id: int) -> None:
        address = await self.resolver.resolve(user_id, address_id)
        was_default = address.is_default
        await self.repository.delete_address(address)
        if was_default:
            successor = await self.repository.most_recent(user_id)
            if successor is not None:
                successor.is_default = True
                await self.repository.save(successor)
                logger.info("Address %s is now the default for user %s", successor.id, user_id)
        logger.info("Deleted address %s for user %s", address_id, user_id)
