"""API routes for the customer's address book."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Response, status

from ..addresses import AddressService
from ..dependencies import Principal, get_address_service, get_principal
from ..errors import ShopError, as_http_exception
from ..schemas import AddressCreate, AddressResponse, AddressUpdate

router = APIRouter(prefix="/addresses", tags=["addresses"])


@router.post("", response_model=AddressResponse, status_code=status.HTTP_201_CREATED)
async def create_address(
    payload: AddressCreate,
    principal: Principal = Depends(get_principal),
    service: AddressService = Depends(get_address_service),
) -> AddressResponse:
    try:
        address = await service.create_address(principal.user_id, payload)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return AddressResponse.model_validate(address)


@router.get("", response_model=list[AddressResponse])
async def list_addresses(
    principal: Principal = Depends(get_principal),
    service: AddressService = Depends(get_address_service),
) -> list[AddressResponse]:
    addresses = await service.list_addresses(principal.user_id)
    return [AddressResponse.model_validate(address) for address in addresses]


@router.get("/default", response_model=AddressResponse)
async def get_default_address(
    principal: Principal = Depends(get_principal),
    service: AddressService = Depends(get_address_service),
) -> AddressResponse:
    try:
        address = await service.get_default(principal.user_id)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return AddressResponse.model_validate(address)


@router.get("/{address_id}", response_model=AddressResponse)
async def get_address(
    address_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_principal),
    service: AddressService = Depends(get_address_service),
) -> AddressResponse:
    try:
        address = await service.get_address(principal.user_id, address_id)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return AddressResponse.model_validate(address)


@router.patch("/{address_id}", response_model=AddressResponse)
async def update_address(
    payload: AddressUpdate,
    address_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_principal),
    service: AddressService = Depends(get_address_service),
) -> AddressResponse:
    try:
        address = await service.update_address(principal.user_id, address_id, payload)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return AddressResponse.model_validate(address)


@router.patch("/{address_id}/default", response_model=AddressResponse)
async def set_default_address(
    address_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_principal),
    service: AddressService = Depends(get_address_service),
) -> AddressResponse:
    try:
        address = await service.set_default(principal.user_id, address_id)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return AddressResponse.model_validate(address)


@router.delete("/{address_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def delete_address(
    address_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_principal),
    service: AddressService = Depends(get_address_service),
) -> Response:
    try:
        await service.delete_address(principal.user_id, address_id)
    except ShopError as exc:
        raise as_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
