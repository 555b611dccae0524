"""Integration tests for the SQL-backed cache store (SQLite via aiosqlite)."""

import pytest
import pytest_asyncio
from sqlalchemy import text

from aigate.datastore import engine as db
from aigate.datastore.repositories import SqlCacheStore
from aigate.services.cache import CacheStatus, ContentCache
from aigate.services.errors import CacheError


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    factory = await db.init_db(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}", echo=False)
    yield factory
    await db.close_db()


@pytest.mark.integration
class TestSqlCacheStore:
    """Test ContentCache on top of the content_cache table."""

    @pytest.mark.asyncio
    async def test_round_trip_and_expiry(self, session_factory, clock):
        cache = ContentCache(SqlCacheStore(session_factory), clock=clock)
        await cache.set("k", {"text": "héllo", "tags": ["a"]}, owner_id="alice")

        assert await cache.get("k") == {"text": "héllo", "tags": ["a"]}
        clock.advance(hours=25)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_upsert_overwrites(self, session_factory, clock):
        store = SqlCacheStore(session_factory)
        cache = ContentCache(store, clock=clock)
        await cache.set("k", "first", status=CacheStatus.PENDING)
        assert await cache.get("k") is None

        await cache.set("k", "second")
        assert await cache.get("k") == "second"

        stats = await store.get_stats()
        assert stats["total_entries"] == 1
        assert stats["completed_entries"] == 1

    @pytest.mark.asyncio
    async def test_corrupt_row_raises(self, session_factory, clock):
        store = SqlCacheStore(session_factory)
        await ContentCache(store, clock=clock).set("k", "ok")
        async with session_factory() as session:
            await session.execute(text("UPDATE content_cache SET value_json = '{broken'"))
            await session.commit()

        with pytest.raises(CacheError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_session_factory_lifecycle(self, session_factory):
        assert db.get_session_factory() is session_factory

        async for session in db.get_db_session():
            result = await session.execute(text("SELECT COUNT(*) FROM content_cache"))
            assert result.scalar_one() == 0
