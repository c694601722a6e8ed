"""Routes for provider webhook deliveries."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from paysettle.config import Settings, get_settings
from paysettle.db import get_session_factory
from paysettle.schemas.webhook import WebhookAck
from paysettle.services import ingestion
from paysettle.utils.errors import WebhookError
from paysettle.utils.time import Clock, get_clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

DEFAULT_SIGNATURE_HEADER = "X-Webhook-Signature"


def _signature_header(provider: str, settings: Settings) -> str:
    config = settings.webhook_providers.get(provider.lower())
    return config.signature_header if config else DEFAULT_SIGNATURE_HEADER


@router.post("/{provider}", status_code=status.HTTP_200_OK, response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> WebhookAck:
    raw_body = await request.body()
    signature = request.headers.get(_signature_header(provider, settings))

    try:
        result = await run_in_threadpool(
            ingestion.ingest_webhook,
            session_factory,
            provider=provider,
            raw_body=raw_body,
            signature=signature,
            settings=settings,
            clock=clock,
        )
    except WebhookError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_payload()) from exc

    return WebhookAck(outcome=result.outcome, provider=result.provider, event_id=result.event_id)


__all__ = ["router"]
