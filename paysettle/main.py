"""FastAPI entrypoint for the webhook settlement service."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from paysettle import db
from paysettle.config import AppInfo, Settings, get_settings
from paysettle.core.logging import get_logger, setup_logging
import paysettle.models  # noqa: F401  registers the tables
from paysettle.routers import get_api_router
from paysettle.utils.errors import error_response

logger = get_logger(__name__)
SCHEMA_BOOTSTRAP_ENVS = {"dev", "local", "test"}


def _assert_webhook_secrets(settings: Settings) -> None:
    """Refuse to start outside dev when no provider could authenticate a delivery."""

    unconfigured = sorted(
        name
        for name, config in settings.webhook_providers.items()
        if not (config.secret or config.secret_next)
    )
    if unconfigured:
        logger.warning(
            "Webhook providers without secrets will answer 503",
            extra={"env": settings.app_env, "providers": unconfigured},
        )

    if len(unconfigured) < len(settings.webhook_providers):
        return
    if settings.app_env.lower() == "dev":
        logger.warning(
            "No webhook provider secret configured; accepted in dev only.",
            extra={"env": settings.app_env},
        )
        return
    logger.error(
        "No webhook provider secret configured; set WEBHOOK_PROVIDERS before startup.",
        extra={"env": settings.app_env},
    )
    raise RuntimeError("Missing webhook provider secrets in non-dev environment.")


def _prepare_schema(settings: Settings) -> None:
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in SCHEMA_BOOTSTRAP_ENVS:
        logger.warning(
            "Creating tables from metadata; APP_ENV=%s allows ALLOW_DB_CREATE_ALL",
            settings.app_env,
        )
        db.create_all()
        return
    logger.info("Schema managed by Alembic migrations", extra={"env": settings.app_env})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info(
        "Settlement service starting",
        extra={"env": settings.app_env, "providers": sorted(settings.webhook_providers)},
    )
    _assert_webhook_secrets(settings)
    db.init_engine(settings)
    _prepare_schema(settings)
    try:
        yield
    finally:
        db.close_engine()
        logger.info("Settlement service stopped", extra={"env": settings.app_env})


def _install_observability(fastapi_app: FastAPI, settings: Settings) -> None:
    if settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(
            PrometheusMiddleware,
            app_name="paysettle",
            group_paths=True,
            skip_paths=["/health", "/metrics"],
        )
        fastapi_app.add_route("/metrics", handle_metrics)

    if settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.app_env,
            traces_sample_rate=0.2,
            send_default_pii=False,
        )


async def _render_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    # Webhook routes already put the error envelope in ``detail``.
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content: dict[str, Any] = exc.detail
    else:
        content = error_response("HTTP_ERROR", str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


async def _render_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", extra={"path": request.url.path}, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred."),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the ASGI application.

    Explicit ``settings`` drive startup and the request dependencies as well as the
    middlewares; without them the cached environment settings are used.
    """

    info = AppInfo()
    fastapi_app = FastAPI(title=info.name, version=info.version, lifespan=lifespan)
    if settings is not None:
        fastapi_app.state.settings = settings
        fastapi_app.dependency_overrides[get_settings] = lambda: settings
    settings = settings or get_settings()
    _install_observability(fastapi_app, settings)
    fastapi_app.include_router(get_api_router())
    fastapi_app.add_exception_handler(HTTPException, _render_http_exception)
    fastapi_app.add_exception_handler(Exception, _render_unhandled)
    return fastapi_app


app = create_app()

__all__ = ["app", "create_app"]
