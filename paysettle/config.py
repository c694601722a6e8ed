"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("PAYSETTLE_ENV", "dev").lower()

SIGNATURE_SCHEMES = {"hmac-sha256", "stripe"}


class ProviderConfig(BaseModel):
    """Webhook verification settings for a single payment provider."""

    secret: str | None = None
    secret_next: str | None = None
    scheme: str = "hmac-sha256"
    signature_header: str = "X-Webhook-Signature"
    tolerance_seconds: int = 300

    @field_validator("secret", "secret_next")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty webhook secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("scheme")
    @classmethod
    def _known_scheme(cls, value: str) -> str:
        scheme = value.strip().lower()
        if scheme not in SIGNATURE_SCHEMES:
            raise ValueError(f"unsupported signature scheme: {value}")
        return scheme


class PlanConfig(BaseModel):
    """Price and entitlement granted by one successful payment cycle."""

    price: Decimal
    currency: str = "USD"
    duration_days: int = Field(default=30, gt=0)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()


class Settings(BaseSettings):
    """Environment configuration for the paysettle backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///paysettle.db"
    database_isolation_level: str | None = "SERIALIZABLE"

    webhook_providers: dict[str, ProviderConfig] = {}

    plans: dict[str, PlanConfig] = {
        "monthly": PlanConfig(price=Decimal("9.99"), currency="USD", duration_days=30),
    }
    default_plan_code: str = "monthly"

    settlement_event_types: list[str] = [
        "payment.succeeded",
        "invoice.paid",
        "invoice.payment_succeeded",
        "checkout.session.completed",
    ]
    settlement_max_attempts: int = 3
    settlement_timeout_seconds: float = 10.0
    stale_event_seconds: int = 300

    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("webhook_providers")
    @classmethod
    def _lower_provider_names(cls, value: dict[str, ProviderConfig]) -> dict[str, ProviderConfig]:
        return {name.strip().lower(): config for name, config in value.items()}


class AppInfo(BaseModel):
    name: str = "paysettle-backend"
    version: str = "0.1.0"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


__all__ = [
    "ENV",
    "SIGNATURE_SCHEMES",
    "ProviderConfig",
    "PlanConfig",
    "Settings",
    "AppInfo",
    "get_settings",
]
