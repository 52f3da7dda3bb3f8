"""Configuration management for the GENR8 generation gateway.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the GENR8_ prefix,
so the catalog, the payment gate and the provider client can be retargeted
without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (GENR8_* prefix)
2. .env file in the project root
3. Default values defined in Genr8Config

Example .env file:
    GENR8_PROVIDER_BASE_URL=https://api.kie.ai/api/v1
    GENR8_PROVIDER_API_KEY=kie_xxx
    GENR8_PUBLIC_BASE_URL=https://genr8.example.com
    GENR8_PAYMENT_BACKEND=http
    GENR8_PAYMENT_BACKEND_URL=https://pay.example.com
    GENR8_CURRENCY=USDC

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The FastAPI application reads it in its lifespan handler; tests build their
own instances with explicit overrides.

Usage Example
-------------
    from genr8.core.config import config

    print(config.currency)
    print(config.dispatch_max_attempts)

Secrets
-------
API keys are held as ``SecretStr`` so they never show up in ``repr()`` output
or log lines.  Call ``get_secret_value()`` at the point of use.

See Also
--------
- .env.example: Template with all available configuration options
- Genr8Config: Full configuration class documentation
"""

from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Bundled catalog shipped inside the package.
DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "models.json"


class Genr8Config(BaseSettings):
    """Main configuration for the GENR8 generation gateway.

    Attributes
    ----------
    Provider Settings:
        provider_base_url : str
            Base URL of the generation provider API
        provider_api_key : SecretStr | None
            Bearer credential for the provider API
        public_base_url : str
            Externally reachable base URL of this service, used to build the
            provider callback URL
        dispatch_max_attempts : int
            Total submit attempts before a request fails with DispatchExhausted
        dispatch_backoff_seconds : float
            Initial delay between submit attempts (doubles after each failure)
        dispatch_timeout_seconds : float
            HTTP timeout for a single submit call

    Payment Settings:
        payment_backend : Literal["http", "mock"]
            Settlement verification backend
        payment_backend_url : str
            Base URL of the HTTP settlement backend
        payment_backend_api_key : SecretStr | None
            Bearer credential for the settlement backend
        payment_backend_timeout_seconds : float
            HTTP timeout for a verification call
        mock_settlement_delay_seconds : float
            Delay after which the mock backend reports settlement
        currency : str
            Currency code charged for every generation
        payment_url_template : str
            URL the client follows to pay; ``{payment_id}`` is substituted
        payment_intent_ttl_seconds : int
            Lifetime of a pending payment intent
        exempt_wallets : list[str]
            Wallets that are exempt from payment (auditable free access)

    Callback Settings:
        callback_ttl_seconds : int
            How long a callback record is retained
        result_timeout_seconds : int
            How long after dispatch a request may wait for its callback
        status_poll_interval_seconds : float
            Minimum spacing of provider status lookups while awaiting a result

    Catalog Settings:
        catalog_path : Path
            JSON file describing the available models
        price_overrides : dict[str, Decimal]
            Per-model price overrides (model id -> price)

    Server Settings:
        server_host : str
            Bind address for uvicorn
        server_port : int
            Port for uvicorn (1024-65535)
        log_level : str
            Root log level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GENR8_",
        case_sensitive=False,
    )

    # Provider settings
    provider_base_url: str = Field(
        default="https://api.kie.ai/api/v1",
        description="Base URL of the generation provider API",
    )
    provider_api_key: SecretStr | None = Field(
        default=None,
        description="Bearer credential for the generation provider",
    )
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL, used for the provider callback URL",
    )
    dispatch_max_attempts: int = Field(
        default=3,
        description="Total submit attempts before DispatchExhausted",
        ge=1,
        le=10,
    )
    dispatch_backoff_seconds: float = Field(
        default=0.5,
        description="Initial backoff between submit attempts (doubles per attempt)",
        ge=0.0,
    )
    dispatch_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for a single provider submit call",
        gt=0.0,
    )

    # Payment settings
    payment_backend: Literal["http", "mock"] = Field(
        default="mock",
        description="Settlement verification backend (mock settles after a fixed delay)",
    )
    payment_backend_url: str = Field(
        default="http://localhost:8402",
        description="Base URL of the HTTP settlement backend",
    )
    payment_backend_api_key: SecretStr | None = Field(
        default=None,
        description="Bearer credential for the settlement backend",
    )
    payment_backend_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for a settlement verification call",
        gt=0.0,
    )
    mock_settlement_delay_seconds: float = Field(
        default=2.0,
        description="Seconds after intent creation at which the mock backend settles",
        ge=0.0,
    )
    currency: str = Field(
        default="USDC",
        description="Currency code charged for every generation",
        min_length=3,
        max_length=8,
    )
    payment_url_template: str = Field(
        default="/payment/{payment_id}",
        description="Payment URL handed to the client; {payment_id} is substituted",
    )
    payment_intent_ttl_seconds: int = Field(
        default=900,
        description="Lifetime of a pending payment intent",
        ge=1,
    )
    exempt_wallets: list[str] = Field(
        default_factory=list,
        description="Wallets granted free access (every exemption is logged)",
    )

    # Callback settings
    callback_ttl_seconds: int = Field(
        default=24 * 60 * 60,
        description="Retention of callback records",
        ge=1,
    )
    result_timeout_seconds: int = Field(
        default=60 * 60,
        description="Maximum wait for a provider callback after dispatch",
        ge=1,
    )
    status_poll_interval_seconds: float = Field(
        default=30.0,
        description="Spacing of provider status lookups for results whose callback is late (0 disables)",
        ge=0.0,
    )

    # Catalog settings
    catalog_path: Path = Field(
        default=DEFAULT_CATALOG_PATH,
        description="JSON file describing the available models",
    )
    price_overrides: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Per-model price overrides, e.g. {\"sora-2\": \"0.25\"}",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=8000,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level",
    )

    @field_validator("currency")
    @classmethod
    def _normalise_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("price_overrides")
    @classmethod
    def _check_positive_overrides(cls, value: dict[str, Decimal]) -> dict[str, Decimal]:
        for model_id, price in value.items():
            if price <= 0:
                raise ValueError(f"price override for {model_id!r} must be > 0, got {price}")
        return value

    @property
    def callback_url(self) -> str:
        """Absolute URL the provider calls when a job finishes."""
        return f"{self.public_base_url.rstrip('/')}/provider-callback"


# Global configuration instance
# Loaded from environment variables (GENR8_* prefix) and the .env file.
config = Genr8Config()
