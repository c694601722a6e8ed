"""Transactional settlement of a recorded webhook event into payment and subscription state."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from paysettle.config import Settings, get_settings
from paysettle.models import (
    Payment,
    PaymentStatus,
    Subscription,
    User,
    WebhookEvent,
    WebhookEventStatus,
)
from paysettle.schemas.webhook import IngestionOutcome, NormalizedWebhookEvent
from paysettle.services import subscription_lifecycle
from paysettle.services.plans import Plan, price_mismatch, resolve_plan
from paysettle.utils.errors import (
    SettlementConflictError,
    SettlementTimeoutError,
    UserNotFoundError,
    WebhookEventMissingError,
)
from paysettle.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

_SERIALIZATION_SQLSTATES = {"40001", "40P01", "55P03"}
_QUERY_CANCELED_SQLSTATE = "57014"
_UNIQUE_VIOLATION_SQLSTATE = "23505"


class _Deadline:
    """Wall-clock budget for one settlement attempt, checked between steps."""

    def __init__(self, seconds: float, monotonic: Callable[[], float]) -> None:
        self.seconds = seconds
        self._monotonic = monotonic
        self._expires = monotonic() + seconds

    def check(self, step: str) -> None:
        if self._monotonic() > self._expires:
            raise SettlementTimeoutError(f"settlement exceeded {self.seconds}s before {step}")


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def is_unique_violation(exc: IntegrityError) -> bool:
    """Return whether ``exc`` is a duplicate key rather than another constraint failure."""

    if _sqlstate(exc) == _UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = str(exc.orig).lower()
    return "unique constraint" in message or "duplicate key" in message


def is_retryable_conflict(exc: DBAPIError) -> bool:
    """Return whether ``exc`` is a lost race that a fresh transaction can resolve."""

    if isinstance(exc, IntegrityError):
        return is_unique_violation(exc)
    if _sqlstate(exc) in _SERIALIZATION_SQLSTATES:
        return True
    return "database is locked" in str(exc.orig).lower()


def _apply_store_timeout(session: Session, settings: Settings) -> None:
    if session.get_bind().dialect.name != "postgresql":
        return
    timeout_ms = int(settings.settlement_timeout_seconds * 1000)
    session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
    session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))


def _finish(event: WebhookEvent, status: WebhookEventStatus, now, note: str | None = None) -> None:
    event.status = status
    event.processed_at = now
    event.error = note


def _resolve_user(session: Session, payload: NormalizedWebhookEvent) -> User | None:
    live_users = select(User).where(User.deleted_at.is_(None))
    if payload.user_id is not None:
        user = session.scalars(live_users.where(User.id == payload.user_id)).first()
        if user is not None:
            return user
    if payload.email:
        return session.scalars(
            live_users.where(func.lower(User.email) == payload.email.lower())
        ).first()
    return None


def _build_payment(
    event: WebhookEvent,
    user: User,
    payload: NormalizedWebhookEvent,
    *,
    status: PaymentStatus,
    plan: Plan | None,
    now,
    extra: dict[str, Any] | None = None,
) -> Payment:
    metadata: dict[str, Any] = {
        "event_id": event.event_id,
        "event_type": event.event_type,
        "plan": plan.code if plan else payload.plan,
    }
    if payload.metadata:
        metadata["provider_metadata"] = payload.metadata
    if extra:
        metadata.update(extra)

    currency = payload.currency or (plan.currency if plan else "XXX")
    return Payment(
        provider=event.provider,
        external_payment_id=event.external_payment_id,
        user_id=user.id,
        webhook_event_id=event.id,
        amount=payload.amount if payload.amount is not None else Decimal("0"),
        currency=currency,
        status=status,
        paid_at=now,
        metadata_json=metadata,
    )


def _settle(
    session: Session,
    webhook_event_id: int,
    *,
    settings: Settings,
    now,
    deadline: _Deadline,
) -> IngestionOutcome:
    event = session.get(WebhookEvent, webhook_event_id, populate_existing=True)
    if event is None:
        raise WebhookEventMissingError(f"webhook event {webhook_event_id} not found")

    log_extra = {"provider": event.provider, "event_id": event.event_id, "event_type": event.event_type}
    if event.status == WebhookEventStatus.PROCESSED:
        logger.info("Webhook event already processed", extra=log_extra)
        return IngestionOutcome.ALREADY_PROCESSED
    if event.status == WebhookEventStatus.IGNORED:
        return IngestionOutcome.IGNORED

    payload = NormalizedWebhookEvent.model_validate(event.payload)

    if event.event_type not in settings.settlement_event_types:
        _finish(event, WebhookEventStatus.IGNORED, now, "unsupported event type")
        logger.info("Webhook event type not settled; ignoring", extra=log_extra)
        return IngestionOutcome.IGNORED
    if not event.external_payment_id:
        _finish(event, WebhookEventStatus.IGNORED, now, "missing external payment id")
        logger.info("Webhook event without payment reference; ignoring", extra=log_extra)
        return IngestionOutcome.IGNORED

    deadline.check("payment lookup")
    existing = session.scalars(
        select(Payment).where(
            Payment.provider == event.provider,
            Payment.external_payment_id == event.external_payment_id,
        )
    ).first()
    if existing is not None:
        _finish(event, WebhookEventStatus.PROCESSED, now)
        logger.info(
            "Payment already settled by another event",
            extra={**log_extra, "payment_id": existing.id, "external_payment_id": event.external_payment_id},
        )
        return IngestionOutcome.PAYMENT_ALREADY_SETTLED

    user = _resolve_user(session, payload)
    if user is None:
        raise UserNotFoundError()

    plan = resolve_plan(settings, payload.plan)
    review_reason = "unknown_plan" if plan is None else price_mismatch(plan, payload.amount, payload.currency)
    if review_reason:
        payment = _build_payment(
            event,
            user,
            payload,
            status=PaymentStatus.REQUIRES_REVIEW,
            plan=plan,
            now=now,
            extra={
                "review_reason": review_reason,
                "reported_amount": str(payload.amount) if payload.amount is not None else None,
                "expected_amount": str(plan.price) if plan else None,
                "expected_currency": plan.currency if plan else None,
            },
        )
        session.add(payment)
        session.flush()
        _finish(event, WebhookEventStatus.PROCESSED, now)
        logger.warning(
            "Payment routed to manual review",
            extra={**log_extra, "payment_id": payment.id, "user_id": user.id, "review_reason": review_reason},
        )
        return IngestionOutcome.MANUAL_REVIEW

    payment = _build_payment(event, user, payload, status=PaymentStatus.SUCCEEDED, plan=plan, now=now)
    session.add(payment)
    session.flush()

    deadline.check("subscription update")
    subscription = session.scalars(
        select(Subscription).where(Subscription.user_id == user.id).with_for_update()
    ).first()
    current = (
        subscription_lifecycle.SubscriptionState.from_model(subscription) if subscription is not None else None
    )
    new_state = subscription_lifecycle.apply_payment(current, now=now, plan_duration=plan.duration)
    if subscription is None:
        subscription = Subscription(user_id=user.id)
        session.add(subscription)
    new_state.apply_to(subscription)
    subscription.plan_code = plan.code
    session.flush()

    payment.subscription_id = subscription.id
    _finish(event, WebhookEventStatus.PROCESSED, now)
    session.flush()
    deadline.check("commit")

    logger.info(
        "Payment settled",
        extra={
            **log_extra,
            "payment_id": payment.id,
            "subscription_id": subscription.id,
            "user_id": user.id,
            "subscription_status": subscription.status.value,
            "current_period_end": subscription.current_period_end.isoformat(),
        },
    )
    return IngestionOutcome.PROCESSED


def settle_event(
    session_factory: sessionmaker[Session],
    webhook_event_id: int,
    *,
    settings: Settings | None = None,
    clock: Clock = utcnow,
    monotonic: Callable[[], float] = time.monotonic,
) -> IngestionOutcome:
    """Settle one recorded webhook event inside a single transaction.

    Lost races (unique violations, serialization failures, a locked SQLite database)
    roll the attempt back and run the whole transaction again; a rerun that finds the
    winner's payment resolves to ``PAYMENT_ALREADY_SETTLED``.
    """

    settings = settings or get_settings()
    max_attempts = max(1, settings.settlement_max_attempts)
    for attempt in range(1, max_attempts + 1):
        deadline = _Deadline(settings.settlement_timeout_seconds, monotonic)
        try:
            with session_factory() as session:
                with session.begin():
                    _apply_store_timeout(session, settings)
                    return _settle(
                        session,
                        webhook_event_id,
                        settings=settings,
                        now=clock(),
                        deadline=deadline,
                    )
        except DBAPIError as exc:
            if _sqlstate(exc) == _QUERY_CANCELED_SQLSTATE:
                raise SettlementTimeoutError("settlement statement timed out") from exc
            if not is_retryable_conflict(exc):
                raise
            logger.warning(
                "Settlement conflict; retrying",
                extra={
                    "webhook_event_id": webhook_event_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": type(exc).__name__,
                },
            )
            if attempt == max_attempts:
                raise SettlementConflictError(
                    f"settlement conflicted {max_attempts} times"
                ) from exc
    raise SettlementConflictError("settlement was not attempted")


__all__ = ["settle_event", "is_retryable_conflict", "is_unique_violation"]
