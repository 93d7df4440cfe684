from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "storefront-service"
API_VERSION = "1.0.0"


class ServiceSettings(BaseSettings):
    """Settings shared by the storefront FastAPI services."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    frontend_url: str = Field(default="http://localhost:3001")
    backend_url: str = Field(default="http://localhost:3000")
    momo_partner_code: str = Field(default="MOMO")
    momo_access_key: str = Field(default="F8BBA842ECF85")
    momo_secret_key: str = Field(default="K951B6PE1waDMi640xX08PD3vg6EkVlz")
    momo_endpoint: str | None = Field(default=None)
    momo_ipn_url: str | None = Field(default=None)
    momo_timeout_seconds: float = Field(default=30.0, gt=0.0)
    discount_codes_enabled: bool = Field(default=True)
    order_number_max_attempts: int = Field(default=5, ge=1)

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )

    @property
    def resolved_momo_endpoint(self) -> str:
        """Gateway base URL; production talks to the live MoMo host."""

        if self.momo_endpoint:
            return self.momo_endpoint.rstrip("/")
        if self.environment == "prod":
            return "https://payment.momo.vn"
        return "https://test-payment.momo.vn"

    @property
    def resolved_momo_ipn_url(self) -> str:
        return self.momo_ipn_url or f"{self.backend_url.rstrip('/')}/payments/momo/ipn"

    @property
    def momo_redirect_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}/payments/momo/return"


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
