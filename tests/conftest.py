"""Test configuration."""
import hashlib
import hmac
import json
import logging
import os
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default env, read when the settings module is imported
os.environ.setdefault("PAYSETTLE_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./paysettle_test.db")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from paysettle.config import PlanConfig, ProviderConfig, Settings, get_settings  # noqa: E402
from paysettle.db import build_engine, build_sessionmaker, create_all, get_session_factory  # noqa: E402
from paysettle.main import app  # noqa: E402
from paysettle.models import User  # noqa: E402
from paysettle.services.ingestion import IngestionResult, ingest_webhook  # noqa: E402
from paysettle.utils.time import get_clock  # noqa: E402

ACME_SECRET = "test-acme-secret"
ACME_NEXT_SECRET = "test-acme-next-secret"
STRIPE_SECRET = "whsec_test_secret"
NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Injected wall clock that only moves when a test says so."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class Store:
    """Short-lived sessions for arranging and asserting.

    Every SQLite transaction takes the write lock, so tests never keep a session
    open across a call into the gate.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._factory = session_factory

    def add(self, *objects: Any) -> None:
        with self._factory.begin() as session:
            session.add_all(objects)

    def all(self, model: type, *criteria: Any) -> list:
        stmt = select(model)
        if criteria:
            stmt = stmt.where(*criteria)
        with self._factory() as session:
            return list(session.scalars(stmt.order_by(model.id)))

    def one(self, model: type, *criteria: Any):
        rows = self.all(model, *criteria)
        assert len(rows) == 1, rows
        return rows[0]

    def count(self, model: type, *criteria: Any) -> int:
        return len(self.all(model, *criteria))


def sign(body: bytes, secret: str = ACME_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_payload(drop: tuple[str, ...] = (), **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event_id": "evt_1",
        "event_type": "payment.succeeded",
        "payment_id": "pay_1",
        "amount": "9.99",
        "currency": "USD",
        "email": "ada@example.com",
    }
    payload.update(overrides)
    for key in drop:
        payload.pop(key, None)
    return payload


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        app_env="test",
        database_url=f"sqlite:///{tmp_path / 'paysettle.db'}",
        webhook_providers={
            "acme": ProviderConfig(secret=ACME_SECRET),
            "rotating": ProviderConfig(secret=ACME_SECRET, secret_next=ACME_NEXT_SECRET),
            "stripe": ProviderConfig(
                secret=STRIPE_SECRET, scheme="stripe", signature_header="Stripe-Signature"
            ),
            "unconfigured": ProviderConfig(),
        },
        plans={
            "monthly": PlanConfig(price=Decimal("9.99"), currency="USD", duration_days=30),
            "annual": PlanConfig(price=Decimal("99.00"), currency="USD", duration_days=365),
        },
        default_plan_code="monthly",
        settlement_max_attempts=3,
        settlement_timeout_seconds=10.0,
        stale_event_seconds=300,
        PROMETHEUS_ENABLED=False,
    )


@pytest.fixture
def engine(settings: Settings) -> Iterator[Engine]:
    test_engine = build_engine(settings.database_url, settings)
    create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_sessionmaker(engine)


@pytest.fixture
def store(session_factory: sessionmaker[Session]) -> Store:
    return Store(session_factory)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def make_user(store: Store) -> Callable[..., User]:
    def _factory(email: str | None = "ada@example.com", *, deleted: bool = False) -> User:
        user = User(
            email=email,
            password_hash=hashlib.sha256(b"correct horse").hexdigest(),
            deleted_at=NOW - timedelta(days=1) if deleted else None,
        )
        store.add(user)
        return user

    return _factory


@pytest.fixture
def ingest(
    session_factory: sessionmaker[Session], settings: Settings, clock: FrozenClock
) -> Callable[..., IngestionResult]:
    def _ingest(
        payload: dict[str, Any] | None = None,
        *,
        body: bytes | None = None,
        provider: str = "acme",
        signature: str | None = None,
        secret: str = ACME_SECRET,
    ) -> IngestionResult:
        raw = body if body is not None else json.dumps(payload or make_payload()).encode()
        return ingest_webhook(
            session_factory,
            provider=provider,
            raw_body=raw,
            signature=signature if signature is not None else sign(raw, secret),
            settings=settings,
            clock=clock,
        )

    return _ingest


@pytest.fixture
async def client(
    session_factory: sessionmaker[Session], settings: Settings, clock: FrozenClock
) -> AsyncIterator[AsyncClient]:
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_clock] = lambda: clock
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as async_client:
            yield async_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
