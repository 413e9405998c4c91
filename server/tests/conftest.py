"""
Shared fixtures: an in-memory local store, recording stand-ins for the backend
platform, payment processor and notification providers, and signed tokens.
"""

import time

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker

from marketplace import models  # noqa: F401  registers local store tables
from marketplace.cache import CacheStore, TwoTierCache
from marketplace.core.config import settings
from marketplace.core.database import Base, build_engine
from marketplace.core.dependencies import get_db
from marketplace.services.fee_service import FeeService
from marketplace.services.notification_service import NotificationService

from tests.fakes import FakeGateway, InMemoryBackend, RecordingEmailSender, RecordingSmsSender

LOCAL_STORE_URL = "sqlite+aiosqlite:///:memory:"

CUSTOMER_ID = "user-customer"
PROVIDER_ID = "user-provider"
ADMIN_ID = "user-admin"


@pytest_asyncio.fixture
async def test_engine():
    engine = build_engine(LOCAL_STORE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def notifier(backend, sms_sender, email_sender):
    return NotificationService(backend, sms_sender, email_sender)


@pytest.fixture
def fees(backend):
    return FeeService(backend)


@pytest.fixture
def cache(session_factory):
    return TwoTierCache(CacheStore(session_factory), max_memory_entries=10, default_ttl=60)


@pytest_asyncio.fixture
async def test_app(session_factory, backend, cache, gateway, notifier):
    """Application with in-memory collaborators in place of the platform and providers."""
    from marketplace.main import create_app

    app = create_app()
    app.state.backend = backend
    app.state.cache = cache
    app.state.payment_gateway = gateway
    app.state.notifier = notifier

    async def local_store_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = local_store_session

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_client(test_app):
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        yield client


@pytest.fixture
def make_token():
    """Build a signed bearer token the way the platform's auth service issues them."""

    def _make(user_id: str, roles=(), email=None, expires_in: int = 3600, secret=None) -> str:
        now = int(time.time())
        claims = {"sub": user_id, "iat": now, "exp": now + expires_in, "aud": "authenticated"}
        if roles:
            claims["roles"] = list(roles)
        if email:
            claims["email"] = email
        return jwt.encode(claims, secret or settings.jwt_secret, algorithm="HS256")

    return _make


@pytest.fixture
def customer_headers(make_token):
    return {"Authorization": f"Bearer {make_token(CUSTOMER_ID, email='customer@mail.com')}"}


@pytest.fixture
def provider_headers(make_token):
    return {"Authorization": f"Bearer {make_token(PROVIDER_ID)}"}


@pytest.fixture
def admin_headers(make_token):
    return {"Authorization": f"Bearer {make_token(ADMIN_ID, roles=['admin'])}"}
