"""Pytest configuration and fixtures.

Database handling:
- TEST_DATABASE_URL selects an explicit database (e.g. a local PostgreSQL)
- Otherwise each run uses a throwaway SQLite file via aiosqlite

Tables are created and dropped around every test that touches the database.
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from argon2 import PasswordHasher
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing sessionguard modules
_tmp_dir = tempfile.mkdtemp(prefix="sessionguard-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_tmp_dir}/test.db"
)
os.environ["JWT_SECRET_KEY"] = "test-secret-key-with-enough-length-0123456789"
# High default rate limit so API tests never see 429 from the middleware
os.environ["RATE_LIMIT_REQUESTS_PER_MINUTE"] = "10000"

from sessionguard.core.database import Base, async_session_maker, engine  # noqa: E402
from sessionguard.core.retry import RetryConfig  # noqa: E402
from sessionguard.services import credentials as credentials_module  # noqa: E402
from sessionguard.services.audit import AuditLogger  # noqa: E402

import sessionguard.models  # noqa: F401, E402

TEST_PASSWORD = "correct-horse-battery"

# Minimal Argon2 cost keeps the suite fast; production parameters live in credentials.py
credentials_module.ph = PasswordHasher(
    time_cost=1, memory_cost=8, parallelism=1, hash_len=16, salt_len=16
)


# --- Rate Limiter Reset Fixture ---


def _reset_rate_limiter_state():
    """Clear buckets and lift limits on the shared rate limiter.

    The middleware holds a reference to the singleton, so the instance is
    reset in place rather than replaced.
    """
    from sessionguard.middleware.rate_limit import PathRateLimitConfig, RateLimiter

    rate_limiter = RateLimiter.get_instance()
    rate_limiter._buckets.clear()
    test_config = PathRateLimitConfig(
        requests_per_minute=10000,
        requests_per_hour=100000,
        burst_size=1000,
    )
    rate_limiter._path_configs = {
        prefix: test_config for prefix in ("/auth/login", "/auth/register", "/auth/refresh")
    }
    rate_limiter._default_config = test_config


@pytest.fixture(autouse=True)
def reset_rate_limiter(request):
    """Reset rate limiter before each test to avoid 429 errors.

    Tests marked with pytest.mark.skip_rate_limiter_reset keep real limits.
    """
    if request.node.get_closest_marker("skip_rate_limiter_reset"):
        yield
        return

    _reset_rate_limiter_state()
    yield
    _reset_rate_limiter_state()


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create all tables for one test and drop them afterwards."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test database."""
    return async_session_maker


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator:
    """A database session for direct service calls.

    SQLite transactions take the write lock on their first statement, so
    tests commit (or close) this session before making API calls or
    flushing the audit logger.
    """
    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def audit_logger(db_engine) -> AsyncGenerator[AuditLogger, None]:
    """Fresh audit logger singleton writing to the test database."""
    audit = AuditLogger(
        session_factory=async_session_maker,
        retry_config=RetryConfig(max_retries=1, base_delay=0.01, jitter=False),
    )
    previous = AuditLogger._instance
    AuditLogger._instance = audit

    yield audit

    await audit.close()
    AuditLogger._instance = previous


@pytest_asyncio.fixture(scope="function")
async def async_client(db_engine, audit_logger) -> AsyncGenerator[AsyncClient, None]:
    """Async test client against the real app and test database.

    ASGITransport connects from 127.0.0.1, which counts as a local proxy,
    so tests choose the client IP with an X-Real-IP header.
    """
    from sessionguard.main import app

    _reset_rate_limiter_state()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    _reset_rate_limiter_state()


# --- Test Factories ---


@pytest.fixture
def user_factory(db_engine):
    """Factory creating committed users through the credential store."""
    from sessionguard.services.credentials import CredentialStore

    async def _create_user(
        email: str = "owner@example.com",
        password: str = TEST_PASSWORD,
        role: str = "user",
        profile: dict[str, Any] | None = None,
    ):
        async with async_session_maker() as db:
            user = await CredentialStore(db).register(email, password, profile, role=role)
            await db.commit()
            return user

    return _create_user


@pytest.fixture
def login(async_client):
    """Log in through the API and return the response JSON."""

    async def _login(
        email: str = "owner@example.com",
        password: str = TEST_PASSWORD,
        ip: str = "203.0.113.10",
        user_agent: str = "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
    ) -> dict[str, Any]:
        response = await async_client.post(
            "/auth/login",
            json={"email": email, "password": password},
            headers={"X-Real-IP": ip, "User-Agent": user_agent},
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _login


@pytest_asyncio.fixture
async def admin_headers(user_factory, login) -> dict[str, str]:
    """Authorization headers for a freshly created admin."""
    await user_factory(email="admin@example.com", role="admin")
    tokens = await login(email="admin@example.com", ip="198.51.100.1")
    return {"Authorization": f"Bearer {tokens['access_token']}", "X-Real-IP": "198.51.100.1"}


@pytest.fixture
def bearer():
    """Build request headers carrying an access token from a login response."""

    def _bearer(tokens: dict[str, Any], ip: str = "203.0.113.10") -> dict[str, str]:
        return {"Authorization": f"Bearer {tokens['access_token']}", "X-Real-IP": ip}

    return _bearer
