"""Shared pytest fixtures for the Speed Monitor test suite.

Provides:
- In-memory async SQLite database (no PostgreSQL needed for tests)
- Credential store and session factory bound to it
- FastAPI test client (httpx.AsyncClient)
- Pre-seeded admin and viewer users
- Auth helpers (bearer tokens)
- A fake Redis client for the shared rate limit store
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["REDIS_URL"] = ""
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SPEEDTEST_ENABLED"] = "false"

from core.security import get_token_issuer, hash_password  # noqa: E402
from db.base import Base  # noqa: E402
from db.database import create_db_engine, create_session_factory  # noqa: E402
from services.credential_store import CredentialStore  # noqa: E402

ADMIN_PASSWORD = "AdminPassword123!"
VIEWER_PASSWORD = "ViewerPassword123!"


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """A fresh in-memory database per test."""
    engine = create_db_engine("sqlite+aiosqlite:///:memory:")
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine, monkeypatch):
    """Session factory for the test engine, also patched into ``db.database``."""
    import db.database as db_mod

    factory = create_session_factory(db_engine)
    monkeypatch.setattr(db_mod, "engine", db_engine)
    monkeypatch.setattr(db_mod, "AsyncSessionLocal", factory)
    return factory


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory) -> CredentialStore:
    return CredentialStore(session_factory=session_factory, timeout=5.0)


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(session_factory):
    """Create a FastAPI app instance wired to the test database."""
    from app.main import create_app

    test_app = create_app()
    yield test_app
    await test_app.state.scheduler.stop()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Test data fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def admin_user(store):
    return await store.insert_user(
        username="admin-test",
        email="admin-test@example.com",
        password_hash=hash_password(ADMIN_PASSWORD),
        role="admin",
    )


@pytest_asyncio.fixture
async def viewer_user(store):
    return await store.insert_user(
        username="viewer-test",
        email="viewer-test@example.com",
        password_hash=hash_password(VIEWER_PASSWORD),
        role="viewer",
    )


@pytest.fixture
def admin_headers(admin_user) -> dict:
    """Authorization headers with a valid admin token."""
    return {"Authorization": f"Bearer {get_token_issuer().issue(admin_user)}"}


@pytest.fixture
def viewer_headers(viewer_user) -> dict:
    """Authorization headers with a valid viewer token."""
    return {"Authorization": f"Bearer {get_token_issuer().issue(viewer_user)}"}


# ---------------------------------------------------------------------------
# Redis stand-in
# ---------------------------------------------------------------------------

class FakeRedis:
    """The handful of async Redis commands the rate limit store uses."""

    def __init__(self):
        self.values: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.down = False
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def incr(self, key):
        self._check()
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def expire(self, key, seconds):
        self._check()
        self.ttls[key] = int(seconds)
        return True

    async def ttl(self, key):
        self._check()
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)

    async def decr(self, key):
        self._check()
        self.values[key] = self.values.get(key, 0) - 1
        return self.values[key]

    async def delete(self, key):
        self._check()
        self.ttls.pop(key, None)
        return 1 if self.values.pop(key, None) is not None else 0

    async def aclose(self):
        pass

    def expire_all(self):
        """Simulate every window running out."""
        self.values.clear()
        self.ttls.clear()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
