"""Ingestion gate: validation, authentication, deduplication and settlement of webhook deliveries."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from paysettle.config import Settings, get_settings
from paysettle.models import WebhookEvent, WebhookEventStatus
from paysettle.schemas.webhook import IngestionOutcome, NormalizedWebhookEvent
from paysettle.services import settlement
from paysettle.services.signatures import verify_provider_signature
from paysettle.utils.errors import SettlementError, WebhookProcessingError, WebhookValidationError
from paysettle.utils.masking import mask_payload
from paysettle.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class IngestionResult:
    outcome: IngestionOutcome
    provider: str
    event_id: str
    webhook_event_id: int | None = None


def parse_delivery(raw_body: bytes, provider: str) -> tuple[NormalizedWebhookEvent, dict[str, Any]]:
    """Validate the delivery's structure without touching the store."""

    if not raw_body or not raw_body.strip():
        raise WebhookValidationError("Webhook body is empty.")
    try:
        data = json.loads(raw_body)
    except ValueError as exc:
        raise WebhookValidationError("Webhook body is not valid JSON.") from exc
    if not isinstance(data, dict):
        raise WebhookValidationError("Webhook body must be a JSON object.")

    try:
        event = NormalizedWebhookEvent.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise WebhookValidationError(
            "Webhook payload is missing or has invalid fields.", {"fields": fields}
        ) from exc

    if event.provider and event.provider != provider:
        raise WebhookValidationError(
            "Webhook payload provider does not match the delivery route.",
            {"provider": provider},
        )
    return event, data


def _error_detail(exc: Exception) -> str:
    detail = str(exc) or type(exc).__name__
    return detail[:_MAX_ERROR_LENGTH]


def _record_event(
    session_factory: sessionmaker[Session],
    provider: str,
    event: NormalizedWebhookEvent,
    payload: dict[str, Any],
    now: datetime,
    max_attempts: int,
) -> int | None:
    """Insert the RECEIVED row; ``None`` means the (provider, event_id) key already exists."""

    for attempt in range(1, max_attempts + 1):
        row = WebhookEvent(
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type,
            external_payment_id=event.external_payment_id,
            payload=payload,
            status=WebhookEventStatus.RECEIVED,
            attempts=1,
            received_at=now,
            updated_at=now,
        )
        try:
            with session_factory() as session:
                with session.begin():
                    session.add(row)
                    session.flush()
                    return row.id
        except IntegrityError as exc:
            if settlement.is_unique_violation(exc):
                return None
            raise
        except DBAPIError as exc:
            if attempt == max_attempts or not settlement.is_retryable_conflict(exc):
                raise
    return None


def _claim_existing(
    session_factory: sessionmaker[Session],
    provider: str,
    event_id: str,
    now: datetime,
    stale_after: timedelta,
) -> int | None:
    """Take over a known event that failed or was abandoned mid-processing.

    Returns the row id when this delivery won the claim, ``None`` when the existing
    row is settled or another delivery is working on it.
    """

    with session_factory() as session:
        with session.begin():
            existing = session.scalars(
                select(WebhookEvent).where(
                    WebhookEvent.provider == provider,
                    WebhookEvent.event_id == event_id,
                )
            ).one_or_none()
            if existing is None or existing.status in (
                WebhookEventStatus.PROCESSED,
                WebhookEventStatus.IGNORED,
            ):
                return None

            claimable = (WebhookEvent.status == WebhookEventStatus.FAILED) | (
                (WebhookEvent.status == WebhookEventStatus.RECEIVED)
                & (WebhookEvent.updated_at < now - stale_after)
            )
            result = session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == existing.id, claimable)
                .values(
                    status=WebhookEventStatus.RECEIVED,
                    error=None,
                    attempts=WebhookEvent.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            logger.info(
                "Reclaimed webhook event for another attempt",
                extra={
                    "provider": provider,
                    "event_id": event_id,
                    "previous_status": existing.status.value,
                    "attempts": existing.attempts + 1,
                },
            )
            return existing.id


def _mark_failed(
    session_factory: sessionmaker[Session],
    webhook_event_id: int,
    exc: Exception,
    now: datetime,
) -> None:
    """Record the failure in its own transaction. Best effort: the row may stay RECEIVED."""

    try:
        with session_factory() as session:
            with session.begin():
                session.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.id == webhook_event_id,
                        WebhookEvent.status != WebhookEventStatus.PROCESSED,
                    )
                    .values(
                        status=WebhookEventStatus.FAILED,
                        error=_error_detail(exc),
                        processed_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
    except SQLAlchemyError:
        logger.exception(
            "Could not record webhook failure; event left RECEIVED",
            extra={"webhook_event_id": webhook_event_id},
        )


def ingest_webhook(
    session_factory: sessionmaker[Session],
    *,
    provider: str,
    raw_body: bytes,
    signature: str | None,
    settings: Settings | None = None,
    clock: Clock = utcnow,
) -> IngestionResult:
    """Handle one provider delivery end to end.

    Raises ``WebhookValidationError``/``WebhookAuthenticationError`` before anything is
    stored, and ``WebhookProcessingError`` when settlement failed and the provider
    should redeliver. Duplicate deliveries return normally.
    """

    started = time.perf_counter()
    settings = settings or get_settings()
    provider = (provider or "").strip().lower()
    if not provider:
        raise WebhookValidationError("Webhook provider is required.")

    event, payload = parse_delivery(raw_body, provider)
    verify_provider_signature(provider, raw_body, signature, settings)

    log_extra = {"provider": provider, "event_id": event.event_id, "event_type": event.event_type}
    now = clock()
    row_id = _record_event(
        session_factory, provider, event, payload, now, max(1, settings.settlement_max_attempts)
    )
    if row_id is None:
        row_id = _claim_existing(
            session_factory,
            provider,
            event.event_id,
            now,
            timedelta(seconds=settings.stale_event_seconds),
        )
    if row_id is None:
        logger.info(
            "Duplicate webhook delivery acknowledged",
            extra={
                **log_extra,
                "outcome": IngestionOutcome.DUPLICATE.value,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return IngestionResult(IngestionOutcome.DUPLICATE, provider, event.event_id)

    try:
        outcome = settlement.settle_event(session_factory, row_id, settings=settings, clock=clock)
    except Exception as exc:
        _mark_failed(session_factory, row_id, exc, clock())
        logger.error(
            "Webhook settlement failed",
            exc_info=not isinstance(exc, SettlementError),
            extra={
                **log_extra,
                "webhook_event_id": row_id,
                "status": WebhookEventStatus.FAILED.value,
                "error": _error_detail(exc),
                "error_code": exc.code if isinstance(exc, SettlementError) else type(exc).__name__,
                "payload": mask_payload(payload),
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        raise WebhookProcessingError(
            "Webhook processing failed; retry later.", {"event_id": event.event_id}
        ) from exc

    logger.info(
        "Webhook ingested",
        extra={
            **log_extra,
            "webhook_event_id": row_id,
            "outcome": outcome.value,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return IngestionResult(outcome, provider, event.event_id, row_id)


__all__ = ["IngestionResult", "ingest_webhook", "parse_delivery"]
