"""Shared fixtures: in-memory database, sandbox notifier, controllable clock."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import auth_service.models  # noqa: F401  registers tables on Base
from auth_service.config import Settings
from auth_service.crud import create_user
from auth_service.main import create_app
from auth_service.notifier import Notifier, OutboxChannel
from auth_service.otp import InMemoryOTPStore
from shared.database import init_db, make_engine, make_session_factory

# Security: test-only secret
TEST_JWT_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105

DEFAULT_PASSWORD = "Password123"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        # start at real time so tokens checked against utcnow still line up
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite://",
        "jwt_secret": TEST_JWT_SECRET,
        "app_env": "test",
        "frontend_url": "http://localhost:5173",
        "public_base_url": "http://testserver",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def outbox() -> OutboxChannel:
    return OutboxChannel("http://testserver/api")


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def notifier(outbox, sleeps) -> Notifier:
    return Notifier(outbox, sender_address="noreply@library.edu", sleep=sleeps.append)


@pytest.fixture
def otp_store() -> InMemoryOTPStore:
    return InMemoryOTPStore()


@pytest.fixture
def make_user(db):
    def _make(email: str, password: str = DEFAULT_PASSWORD, role: str = "student", name: str = "Test User"):
        return create_user(db, name=name, email=email, password=password, role=role)

    return _make


@pytest.fixture
def app(settings, session_factory, notifier, otp_store, clock):
    return create_app(
        settings,
        session_factory=session_factory,
        notifier=notifier,
        otp_store=otp_store,
        clock=clock,
    )


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as c:
        yield c


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
