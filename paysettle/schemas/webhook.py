"""Schemas for inbound webhook deliveries."""
from __future__ import annotations

import enum
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class IngestionOutcome(str, enum.Enum):
    """How a delivery was resolved; every value is a success from the caller's side."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    ALREADY_PROCESSED = "already_processed"
    PAYMENT_ALREADY_SETTLED = "payment_already_settled"
    MANUAL_REVIEW = "manual_review"
    IGNORED = "ignored"


class NormalizedWebhookEvent(BaseModel):
    """Provider-agnostic event shape accepted by the ingestion gate."""

    provider: str | None = Field(default=None, min_length=1, max_length=50)
    event_id: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("event_id", "id"),
    )
    event_type: str = Field(
        min_length=1,
        max_length=100,
        validation_alias=AliasChoices("event_type", "type"),
    )
    external_payment_id: str | None = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("external_payment_id", "payment_id"),
    )
    amount: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    email: str | None = None
    user_id: int | None = None
    plan: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str | None) -> str | None:
        return value.upper() if value else value

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, value: str | None) -> str | None:
        return value.lower() if value else value

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("external_payment_id", "email", "plan")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None


class WebhookAck(BaseModel):
    received: bool = True
    outcome: IngestionOutcome
    provider: str
    event_id: str
