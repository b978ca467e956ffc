import sys
import os
# Put the project root on sys.path so tests run from any directory without setting PYTHONPATH
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, UTC
from testcontainers.postgres import PostgresContainer
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from buddymatch.constants import PRESENCE, PRESENCE_AVAILABLE
from buddymatch.models import Base
from buddymatch.schemas import Presence
from buddymatch.store.memory import MemoryDocumentStore
from buddymatch.store.sql import SqlDocumentStore


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture(scope="session")
def pg_url():
    if os.getenv("RUN_PG_TESTS") != "1":
        pytest.skip("set RUN_PG_TESTS=1 to run against PostgreSQL")
    with PostgresContainer("postgres:15") as pg:
        url = pg.get_connection_url()
        url = url.replace('postgresql+psycopg2://', 'postgresql+asyncpg://')
        url = url.replace('postgresql://', 'postgresql+asyncpg://')
        yield url


@pytest_asyncio.fixture(params=["sqlite", "postgres"])
async def sql_store(request, tmp_path):
    if request.param == "sqlite":
        url = f"sqlite+aiosqlite:///{tmp_path / 'documents.db'}"
    else:
        url = request.getfixturevalue("pg_url")
    engine = create_async_engine(url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    Session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlDocumentStore(Session, max_attempts=10)
    await engine.dispose()


async def put_presence(store, user_id, expires_in=timedelta(hours=1), activity_tag="coffee", **fields):
    """Write a presence directly, bypassing start_presence validation."""
    now = datetime.now(UTC)
    presence = Presence(
        user_id=user_id,
        activity_tag=activity_tag,
        duration_minutes=60,
        lat=40.73,
        lng=-73.99,
        session_id=f"session-{user_id}",
        status=PRESENCE_AVAILABLE,
        expires_at=now + expires_in,
        created_at=now,
        updated_at=now,
    )
    data = {**presence.to_document(), **fields}

    async def body(txn):
        txn.set(PRESENCE, user_id, data)

    await store.run_transaction(body)
    return data


@pytest.fixture
def presence_factory(store):
    async def _create(user_id, **kwargs):
        return await put_presence(store, user_id, **kwargs)
    return _create


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the idempotency cache."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl


@pytest.fixture
def fake_redis():
    return FakeRedis()
