"""
Shared test fixtures for pytest.

Provides:
- fake_settings: Test environment configuration (SQLite file database)
- engine, session_factory, db_session: Real async SQLAlchemy sessions on
  aiosqlite with the schema created from ORM metadata
- org_id, other_org_id: Tenant ids for isolation tests
- receiver: Scripted webhook endpoint backed by httpx.MockTransport
- sender, worker: WebhookSender / DeliveryWorker wired to the receiver
- test_app, client: FastAPI app on the test database, with auth headers
- make_token: Helper to create test JWT tokens
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import jwt
import pytest
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import src.models  # noqa: F401 - registers tables with Base.metadata
from src.config import Environment, Settings, get_settings
from src.core.events import get_event_bus
from src.database import Base, make_session_factory
from src.services.webhook_delivery import DeliveryWorker, WebhookSender


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_event_bus():
    """Drop subscribers registered by a test from the process-wide bus."""
    yield
    get_event_bus().clear()


# ------------------------------------------------------------------ #
# Constants for Test JWTs
# ------------------------------------------------------------------ #

TEST_JWT_SECRET = "test-jwt-secret-for-unit-tests"
TEST_JWT_AUDIENCE = "feedbackflow-api"


def make_token(
    sub: str,
    organization_id: str | None,
    email: str = "hr.admin@example.com",
    audience: str = TEST_JWT_AUDIENCE,
    secret: str = TEST_JWT_SECRET,
    expires_in: int = 3600,
) -> str:
    """Create a test JWT token using HS256.

    Args:
        sub: Subject claim (user id)
        organization_id: Organization UUID as string (omitted when None)
        email: User email address
        audience: 'aud' claim
        secret: Signing key
        expires_in: Seconds until expiry (negative for an expired token)

    Returns:
        Encoded JWT token string
    """
    now = int(datetime.now(timezone.utc).timestamp())
    payload: dict[str, Any] = {
        "sub": sub,
        "email": email,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        "jti": str(uuid.uuid4()),
    }
    if organization_id is not None:
        payload["organization_id"] = organization_id
    return jwt.encode(payload, secret, algorithm="HS256")


# ------------------------------------------------------------------ #
# Settings & Database
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings(tmp_path: Path) -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        secret_key="test-secret-key",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}",
        jwt_secret=TEST_JWT_SECRET,
        jwt_audience=TEST_JWT_AUDIENCE,
        debug=True,
        db_echo_sql=False,
        webhook_worker_enabled=False,
        webhook_worker_concurrency=1,
    )


@pytest.fixture
async def engine(fake_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite file database with the schema created from ORM metadata.

    NullPool gives every session its own connection, so sessions are
    isolated the way they are on PostgreSQL.
    """
    engine = create_async_engine(fake_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """A session for arranging and asserting.

    Commit before running the worker: the worker uses its own sessions.
    """
    async with session_factory() as session:
        yield session


# ------------------------------------------------------------------ #
# Tenant Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def org_id() -> uuid.UUID:
    return uuid.UUID("12345678-1234-5678-1234-567812345678")


@pytest.fixture
def other_org_id() -> uuid.UUID:
    return uuid.UUID("87654321-8765-4321-8765-432187654321")


# ------------------------------------------------------------------ #
# Webhook receiver
# ------------------------------------------------------------------ #

class Receiver:
    """Scripted webhook endpoint.

    Each request consumes the next scripted outcome; the last one repeats.
    An outcome is an HTTP status code or an exception to raise (transport
    failure).
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.body: Any = {"received": True}
        self._script: list[int | Exception] = [200]

    def respond_with(self, *outcomes: int | Exception) -> None:
        self._script = list(outcomes)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
def sender(receiver: Receiver) -> WebhookSender:
    return WebhookSender(timeout_seconds=2.0, transport=receiver.transport)


@pytest.fixture
def worker(
    session_factory: async_sessionmaker[AsyncSession],
    sender: WebhookSender,
) -> DeliveryWorker:
    """Delivery worker running one attempt at a time."""
    return DeliveryWorker(session_factory, sender, batch_size=100, concurrency=1)


# ------------------------------------------------------------------ #
# App & HTTP Client Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def test_app(
    fake_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    sender: WebhookSender,
) -> FastAPI:
    """FastAPI app wired to the test database and the scripted receiver.

    The lifespan is not run (ASGITransport does not send lifespan events),
    so the session and settings dependencies are overridden directly.
    """
    from src.api.webhooks import get_webhook_sender
    from src.database import get_db_session
    from src.main import create_app

    app = create_app()

    async def _test_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_settings] = lambda: fake_settings
    app.dependency_overrides[get_db_session] = _test_db_session
    app.dependency_overrides[get_webhook_sender] = lambda: sender
    return app


@pytest.fixture
def token_factory():
    """Expose make_token to tests that need custom claims."""
    return make_token


@pytest.fixture
def auth_headers(org_id: uuid.UUID) -> dict[str, str]:
    """Valid JWT Bearer token headers for an administrator of org_id."""
    return {"Authorization": f"Bearer {make_token('hr-admin-1', str(org_id))}"}


@pytest.fixture
async def client(
    test_app: FastAPI,
    auth_headers: dict[str, str],
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Authenticated async HTTP client for the FastAPI application."""
    transport = httpx.ASGITransport(app=test_app)  # type: ignore[arg-type]
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers=auth_headers,
    ) as ac:
        yield ac


@pytest.fixture
async def anonymous_client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=test_app)  # type: ignore[arg-type]
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
