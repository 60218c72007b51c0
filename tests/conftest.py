import asyncio
import inspect
import json
import sys
from itertools import count
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import anyio
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bookflow.domain.bookings import db_models as booking_db_models
from bookflow.domain.bookings.executor import TransitionExecutor
from bookflow.infra.db import Base
from bookflow.main import app
from bookflow.settings import settings

BUILDER_ID = "builder-1"
WEBHOOK_SIGNATURE = "t=1,v1=valid"


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    names = [
        "app_env",
        "testing",
        "auth_secret_key",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "checkout_return_allowed_hosts_raw",
        "calendly_webhook_signing_key",
        "calendly_correlation_question",
        "transition_max_attempts",
        "not_found_retry_attempts",
        "not_found_backoff_seconds",
        "metrics_enabled",
        "metrics_token",
    ]
    original = {name: getattr(settings, name) for name in names}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.stripe_secret_key = "sk_test_123"
    settings.stripe_webhook_secret = "whsec_test_123"
    settings.checkout_return_allowed_hosts_raw = None
    settings.calendly_webhook_signing_key = None
    settings.not_found_backoff_seconds = 0
    app.state.stripe_client = None
    yield
    app.state.stripe_client = None


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    rate_limiter = getattr(app.state, "rate_limiter", None)
    reset = getattr(rate_limiter, "reset", None) if rate_limiter else None
    if reset:
        if inspect.iscoroutinefunction(reset):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(reset())
            else:
                anyio.from_thread.run(reset)
        else:
            reset()
    yield


@pytest.fixture()
def client(async_session_maker):
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


class FakeStripe:
    """In-memory stand-in for ``StripeClient`` that honours idempotency keys."""

    def __init__(self) -> None:
        self.sessions: dict[str, SimpleNamespace] = {}
        self.by_idempotency_key: dict[str, SimpleNamespace] = {}
        self.create_calls: list[dict] = []
        self.expired: list[str] = []
        self.unavailable = False
        self._ids = count(1)

    def create_checkout_session(self, **kwargs):
        if self.unavailable:
            raise ConnectionError("stripe down")
        self.create_calls.append(kwargs)
        key = kwargs.get("idempotency_key")
        if key and key in self.by_idempotency_key:
            return self.by_idempotency_key[key]
        session_id = f"cs_test_{next(self._ids):04d}"
        checkout_session = SimpleNamespace(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            status="open",
            payment_status="unpaid",
            payment_intent=None,
            metadata=dict(kwargs.get("metadata") or {}),
        )
        self.sessions[session_id] = checkout_session
        if key:
            self.by_idempotency_key[key] = checkout_session
        return checkout_session

    def retrieve_session(self, session_ref: str):
        if self.unavailable:
            raise ConnectionError("stripe down")
        return self.sessions[session_ref]

    def expire_session(self, session_ref: str):
        self.expired.append(session_ref)
        checkout_session = self.sessions.get(session_ref)
        if checkout_session is not None:
            checkout_session.status = "expired"
        return checkout_session

    def complete(self, session_ref: str, payment_intent: str = "pi_test_0001") -> None:
        checkout_session = self.sessions[session_ref]
        checkout_session.status = "complete"
        checkout_session.payment_status = "paid"
        checkout_session.payment_intent = payment_intent

    def verify_webhook(self, payload: bytes, signature: str | None):
        if signature != WEBHOOK_SIGNATURE:
            raise ValueError("bad signature")
        return json.loads(payload)


@pytest.fixture()
def fake_stripe():
    stub = FakeStripe()
    app.state.stripe_client = stub
    return stub


@pytest.fixture()
def executor(async_session_maker, fake_stripe):
    return TransitionExecutor(async_session_maker, stripe_client=fake_stripe, max_attempts=3)


@pytest.fixture()
def seed_session_type(async_session_maker):
    def _seed(
        price_cents: int = 5000,
        builder_id: str = BUILDER_ID,
        is_active: bool = True,
        calendly_event_type_uri: str | None = None,
    ) -> str:
        async def _create() -> str:
            async with async_session_maker() as session:
                session_type = booking_db_models.SessionType(
                    builder_id=builder_id,
                    name="Discovery call",
                    duration_minutes=30,
                    price_cents=price_cents,
                    currency="usd",
                    is_active=is_active,
                    calendly_event_type_uri=calendly_event_type_uri,
                )
                session.add(session_type)
                await session.commit()
                return session_type.session_type_id

        return asyncio.run(_create())

    return _seed


@pytest.fixture()
def load_booking(async_session_maker):
    def _load(booking_id: str) -> booking_db_models.Booking | None:
        async def _get():
            async with async_session_maker() as session:
                return await session.get(booking_db_models.Booking, booking_id)

        return asyncio.run(_get())

    return _load


@pytest.fixture()
def make_booking(client, seed_session_type):
    def _make(price_cents: int = 5000, calendar_event_ref: str = "CAL456", **overrides) -> str:
        session_type_id = seed_session_type(price_cents=price_cents)
        payload = {
            "builderId": BUILDER_ID,
            "sessionTypeId": session_type_id,
            "calendarEventRef": calendar_event_ref,
            "startsAt": "2030-05-01T15:00:00+00:00",
            "endsAt": "2030-05-01T16:00:00+00:00",
            "inviteeEmail": "client@example.com",
        }
        payload.update(overrides)
        response = client.post("/bookings", json=payload)
        assert response.status_code == 201, response.text
        return response.json()["bookingId"]

    return _make
