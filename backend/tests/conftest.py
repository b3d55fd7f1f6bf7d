"""
Test fixtures and configuration for pytest.
"""

import os
import sys
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Cheap bcrypt for the whole run; must be set before settings are cached
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from db.database import build_engine, build_sessionmaker, get_db, init_db
from middleware.rate_limit import InMemoryAttemptBackend, LoginRateLimiter
from models.user import User, UserRole
from services.password import PasswordHasher


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """A fresh SQLite file database per test."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(fake_clock) -> LoginRateLimiter:
    return LoginRateLimiter(
        InMemoryAttemptBackend(),
        ip_max_attempts=10,
        ip_window_seconds=900,
        account_max_attempts=5,
        account_window_seconds=900,
        lock_duration_seconds=900,
        clock=fake_clock,
    )


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession, hasher: PasswordHasher):
    """Factory for committed users with a bcrypt password."""

    async def _make(
        email: str = "analyst@example.com",
        password: Optional[str] = "Correct-Horse-42",
        role: UserRole = UserRole.USER,
    ) -> User:
        user = User(
            email=email,
            password_hash=await hasher.hash(password) if password else None,
            role=role.value,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


# ============== Client Fixtures ==============


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, rate_limiter, hasher) -> AsyncGenerator[AsyncClient, None]:
    """Test client with its own database and login limiter; one session per request."""
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.login_rate_limiter = rate_limiter
    app.state.password_hasher = hasher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


