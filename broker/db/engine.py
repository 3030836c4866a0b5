"""Async SQLAlchemy engine and session management."""

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

# Model modules register their tables on BaseEntity.metadata.
import broker.db.models_oauth  # noqa: F401
import broker.db.models_transaction  # noqa: F401
from broker.core.settings import DatabaseSettings
from broker.db.base import BaseEntity


class _EngineHolder:
    """Lazy singleton for the engine and async session factory."""

    engine: AsyncEngine | None = None
    factory: async_sessionmaker[AsyncSession] | None = None


_holder = _EngineHolder()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Lazily create the async session factory."""
    if _holder.factory is None:
        db = DatabaseSettings()
        _holder.engine = create_async_engine(
            db.async_url,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
        )
        _holder.factory = async_sessionmaker(
            _holder.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _holder.factory


async def create_schema() -> None:
    """Create all broker tables that do not exist yet."""
    get_session_factory()
    assert _holder.engine is not None
    async with _holder.engine.begin() as conn:
        await conn.run_sync(BaseEntity.metadata.create_all)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that yields an async database session."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
