import os
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from buddymatch.models import Base

# Try to get DATABASE_URL first (Railway provides this)
DATABASE_URL = os.getenv("DATABASE_URL")

# If not available, construct from individual components
if not DATABASE_URL:
    from buddymatch.config import POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_DB, POSTGRES_HOST, POSTGRES_PORT
    DATABASE_URL = f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}"
else:
    # Railway provides postgres:// but we need postgresql+asyncpg://
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
    elif DATABASE_URL.startswith("postgresql://"):
        DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

# Engine is created lazily so importing this module never needs a driver
_engine = None
_session_factory = None


def get_engine():
    global _engine
    if _engine is None:
        _engine = create_async_engine(DATABASE_URL, future=True, pool_pre_ping=True)
    return _engine


def get_session_factory():
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def init_models(engine=None):
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


_default_store = None


def get_default_store():
    """Process-wide store selected by STORE_BACKEND."""
    global _default_store
    if _default_store is None:
        from buddymatch.config import STORE_BACKEND
        if STORE_BACKEND == 'memory':
            from buddymatch.store.memory import MemoryDocumentStore
            _default_store = MemoryDocumentStore()
        else:
            from buddymatch.store.sql import SqlDocumentStore
            _default_store = SqlDocumentStore(get_session_factory())
    return _default_store
