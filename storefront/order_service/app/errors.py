"""Domain errors raised by the checkout services and their HTTP mapping."""

from __future__ import annotations

from fastapi import HTTPException, status


class ShopError(Exception):
    """Base class for errors the HTTP layer reports back to the caller."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])


class NotFoundError(ShopError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(ShopError):
    status_code = status.HTTP_403_FORBIDDEN


class AuthenticationError(ShopError):
    status_code = status.HTTP_401_UNAUTHORIZED


class BusinessRuleError(ShopError):
    """Checkout or lifecycle rule violated (empty cart, stock, transition...)."""


class InvalidSignatureError(ShopError):
    """Gateway callback whose HMAC does not match."""


class ConflictError(ShopError):
    status_code = status.HTTP_409_CONFLICT


class GatewayError(ShopError):
    """The payment gateway answered but rejected the request."""


class GatewayUnavailableError(ShopError):
    """The payment gateway could not be reached in time; safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def as_http_exception(exc: ShopError) -> HTTPException:
    detail: str | dict[str, object] = exc.message
    if exc.errors:
        detail = {"message": exc.message, "errors": exc.errors}
    return HTTPException(status_code=exc.status_code, detail=detail)
