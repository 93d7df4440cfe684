from contextlib import asynccontextmanager

from fastapi import FastAPI
from httpx import AsyncClient

from storefront.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    configure_logging,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
)

from .api.addresses import router as addresses_router
from .api.carts import router as carts_router
from .api.discounts import router as discounts_router
from .api.health import router as health_router
from .api.orders import router as orders_router
from .api.payments import router as payments_router
from .momo import MomoClient
from .notifications import EmailProvider

SERVICE_NAME = "Storefront Checkout Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./storefront.db"


def create_app(
    settings: ServiceSettings | None = None,
    *,
    email_provider: EmailProvider | None = None,
) -> FastAPI:
    """Create the checkout FastAPI application.

    Without an ``email_provider`` payment confirmations are not mailed.
    """

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client: AsyncClient | None = None
        app.state.session_factory = session_factory
        try:
            http_client = AsyncClient(timeout=resolved_settings.momo_timeout_seconds)
            app.state.momo_client = MomoClient(http_client, resolved_settings)
            app.state.email_provider = email_provider
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.momo_client = None
            app.state.email_provider = None
            if http_client is not None:
                await http_client.aclose()
            await dispose_engines()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(carts_router)
    app.include_router(addresses_router)
    app.include_router(discounts_router)
    app.include_router(orders_router)
    app.include_router(payments_router)
    return app


app = create_app()
