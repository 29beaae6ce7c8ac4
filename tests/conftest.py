"""Pytest configuration and shared fixtures for UMKM Studio tests."""

import itertools
import os
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set test environment BEFORE importing app modules
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")

from umkm_studio.api.deps import get_db
from umkm_studio.core.database import Base
from umkm_studio.main import app
from umkm_studio.models.account import Account
from umkm_studio.services.auth_service import AuthService
from umkm_studio.services.settings_service import LedgerConfig

INTERNAL_API_KEY = os.environ["INTERNAL_API_KEY"]

_account_numbers = itertools.count(1)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh file-backed SQLite database per test.

    A file (not :memory:) so concurrent sessions see the same data and
    contend for the write lock the way separate API workers would.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger_config():
    """Ledger settings used by most tests (the documented defaults)."""
    return LedgerConfig(
        free_credits=10,
        cooldown_seconds=60,
        referral_signup_bonus=10,
        referral_commission_percent=10,
    )


@pytest.fixture
def make_account(db_session):
    """Factory for accounts with a given ledger state."""

    async def _make(
        credits: int = 0,
        email_verified: bool = True,
        credits_granted: bool = True,
        last_generation_at=None,
        email: str = None,
        referral_code: str = None,
    ) -> Account:
        number = next(_account_numbers)
        account = Account(
            email=email or f"user{number}@example.com",
            credits=credits,
            email_verified=email_verified,
            credits_granted=credits_granted,
            last_generation_at=last_generation_at,
            referral_code=referral_code or f"REF{number:05d}",
        )
        db_session.add(account)
        await db_session.commit()
        await db_session.refresh(account)
        return account

    return _make


@pytest.fixture(autouse=True)
def mock_redis(monkeypatch):
    """Replace the shared Redis client so status publishing never hits the network."""
    client = AsyncMock()
    client.publish.return_value = 0
    client.get.return_value = None
    monkeypatch.setattr("umkm_studio.core.pubsub.get_redis", AsyncMock(return_value=client))
    return client


@pytest_asyncio.fixture
async def client(session_factory):
    """HTTP client bound to the app with the test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(account: Account) -> dict:
    """Bearer header for an account."""
    token, _ = AuthService.create_access_token(account.id)
    return {"Authorization": f"Bearer {token}"}
