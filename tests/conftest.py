import os
import sys
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add the project root to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import slot_booking.models  # noqa: E402,F401
from slot_booking.core.database import Base, get_db, get_session_factory  # noqa: E402
from slot_booking.main import app  # noqa: E402

# PostgreSQL when provided (see scripts/setup_test_db.py), SQLite file otherwise
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
async def engine(tmp_path):
    """Create a fresh schema for each test."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'slot_booking.db'}"
    engine = create_async_engine(url, echo=False, pool_pre_ping=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)  # Clean slate
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """Session used by fixtures to seed data."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def override_dependencies(db: AsyncSession, session_factory):
    """Point the app's database dependencies at the test database."""

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield
    app.dependency_overrides.clear()


# Test Authentication Utilities
def get_auth_headers(user_id: UUID) -> dict[str, str]:
    """
    Generate authentication headers for tests.

    The bearer token is the user's id.
    """
    return {"Authorization": f"Bearer {user_id}"}


pytest_plugins = ["tests.fixtures.reservation_fixtures"]
