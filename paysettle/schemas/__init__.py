"""Pydantic schemas for the paysettle API."""
from .webhook import IngestionOutcome, NormalizedWebhookEvent, WebhookAck

__all__ = ["IngestionOutcome", "NormalizedWebhookEvent", "WebhookAck"]
