"""
Database engine lifecycle for the SQL cache store.
SQLAlchemy async engine; SQLite through aiosqlite unless DATABASE_URL says otherwise.
"""

from typing import AsyncGenerator

from loguru import logger
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from aigate.datastore.models import Base
from aigate.settings import global_settings

engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


async def init_db(
    database_url: str | None = None,
    echo: bool | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Open the engine, create missing tables and return the session factory."""
    global engine, AsyncSessionLocal

    url = database_url or global_settings.database_url
    engine = create_async_engine(
        url,
        echo=global_settings.database_echo if echo is None else echo,
    )
    AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Cache database ready ({engine.url.render_as_string(hide_password=True)})")
    return AsyncSessionLocal


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def close_db() -> None:
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None
