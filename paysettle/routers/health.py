"""Health check endpoint."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session, sessionmaker

from paysettle.config import Settings, get_settings
from paysettle.db import get_session_factory
from paysettle.models import WebhookEvent, WebhookEventStatus
from paysettle.services.signatures import ProviderSecrets, secret_fingerprints

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _secret_status(primary: str | None, secondary: str | None) -> str:
    if primary and secondary:
        return "rotating"
    if primary or secondary:
        return "ok"
    return "missing"


def _providers_status(settings: Settings) -> dict[str, dict[str, object]]:
    providers: dict[str, dict[str, object]] = {}
    for name, config in settings.webhook_providers.items():
        secrets = ProviderSecrets(
            provider=name,
            primary=config.secret,
            secondary=config.secret_next,
            scheme=config.scheme,
            signature_header=config.signature_header,
            tolerance_seconds=config.tolerance_seconds,
        )
        providers[name] = {
            "scheme": config.scheme,
            "secret_status": _secret_status(config.secret, config.secret_next),
            "secret_fingerprints": secret_fingerprints(secrets),
        }
    return providers


def _event_backlog(session_factory: sessionmaker[Session]) -> tuple[str, dict[str, int]]:
    """Return DB status and the number of events still waiting on a redelivery."""

    try:
        with session_factory() as session:
            session.execute(text("SELECT 1"))
            rows = session.execute(
                select(WebhookEvent.status, func.count(WebhookEvent.id))
                .where(WebhookEvent.status.in_([WebhookEventStatus.FAILED, WebhookEventStatus.RECEIVED]))
                .group_by(WebhookEvent.status)
            ).all()
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error", {}

    backlog = {WebhookEventStatus.FAILED.value: 0, WebhookEventStatus.RECEIVED.value: 0}
    for event_status, count in rows:
        backlog[WebhookEventStatus(event_status).value] = count
    return "ok", backlog


@router.get("", summary="Health check")
def healthcheck(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> dict[str, object]:
    """Return DB reachability, webhook provider configuration and the event backlog."""

    db_status, backlog = _event_backlog(session_factory)
    providers = _providers_status(settings)
    configured = any(p["secret_status"] != "missing" for p in providers.values())
    return {
        "status": "ok" if db_status == "ok" and configured else "degraded",
        "db_status": db_status,
        "webhook_providers": providers,
        "webhook_events_backlog": backlog,
    }
