"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from sportxp.config import get_settings
from sportxp.db.base import Base
from sportxp.db.models import User
from sportxp.progression.level_table import level_for
from sportxp.progression.seed import seed_badges
from sportxp.progression.time_utils import utcnow


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are cached; tests that set SPORTXP_* env vars need a clean cache."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_db(db_session: AsyncSession) -> AsyncSession:
    """DB session with badge definitions seeded."""
    await seed_badges(db_session)
    return db_session


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory for committed users: ``await make_user(total_xp=300)``."""
    counter = 0

    async def _make(username: str | None = None, total_xp: int = 0) -> User:
        nonlocal counter
        counter += 1
        user = User(
            username=username or f"athlete{counter}",
            email=f"athlete{counter}@example.com",
            total_xp=total_xp,
            current_level=level_for(total_xp),
            created_at=utcnow(),
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def redis_mock() -> AsyncMock:
    """Stand-in for redis.asyncio.Redis: publish/zadd are awaitable, pipeline() is sync."""
    redis = AsyncMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    redis.pipeline = MagicMock(return_value=pipe)
    return redis
