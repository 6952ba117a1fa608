"""
Shared fixtures.
Every test gets a fresh SQLite database file and an in-process cache, so no
PostgreSQL or Redis server is needed.
"""

from datetime import datetime
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from abuse_control.config import Settings, get_settings
from abuse_control.models import Project
from abuse_control.utils.cache import MemoryCache
from abuse_control.utils.database import build_session_maker, init_db

NOW = datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return Settings(
        CACHE_BACKEND="memory",
        JOB_CONCURRENCY=1,
        EMAIL_API_URL=None,
        SUPPORT_EMAIL="support@example.com",
    )


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def cache():
    return MemoryCache(prefix="test")


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'abuse.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return build_session_maker(engine)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def project_factory(db):
    async def _create(**overrides):
        values = {
            "name": "storefront",
            "organization_name": "Acme",
            "owner_id": uuid4(),
            "owner_email": "owner@acme.test",
            "environment": "production",
            "created_at": NOW,
        }
        values.update(overrides)
        project = Project(**values)
        db.add(project)
        await db.flush()
        return project

    return _create
