"""
Repository layer - data access for the content cache.
"""

import json
from datetime import datetime

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aigate.datastore.models import ContentCacheDB
from aigate.services.cache import CacheEntry, CacheStatus, CacheStore
from aigate.services.errors import CacheError


class ContentCacheRepository:
    """Content cache Repository"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> ContentCacheDB | None:
        result = await self.session.execute(
            select(ContentCacheDB).where(ContentCacheDB.key == key)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        key: str,
        value_json: str | None,
        status: str,
        created_at: datetime,
        owner_id: str | None = None,
    ) -> None:
        """Insert or overwrite a cache row."""
        cached = await self.get(key)

        if cached:
            cached.value_json = value_json
            cached.status = status
            cached.owner_id = owner_id
            cached.created_at = created_at
            cached.updated_at = datetime.now()
            logger.debug(f"Updated cache row: {key[:12]}...")
        else:
            self.session.add(
                ContentCacheDB(
                    key=key,
                    value_json=value_json,
                    status=status,
                    owner_id=owner_id,
                    created_at=created_at,
                    updated_at=datetime.now(),
                )
            )
            logger.debug(f"Created cache row: {key[:12]}...")
        await self.session.flush()

    async def get_cache_stats(self) -> dict[str, int]:
        """Count rows per status."""
        result = await self.session.execute(
            select(ContentCacheDB.status, func.count()).group_by(ContentCacheDB.status)
        )
        counts = {status: count for status, count in result.all()}
        return {
            "total_entries": sum(counts.values()),
            **{f"{status.lower()}_entries": count for status, count in counts.items()},
        }


class SqlCacheStore(CacheStore):
    """CacheStore backed by the content_cache table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> CacheEntry | None:
        async with self._session_factory() as session:
            row = await ContentCacheRepository(session).get(key)
            if row is None:
                return None

            value = None
            if row.value_json is not None:
                try:
                    value = json.loads(row.value_json)
                except json.JSONDecodeError as e:
                    raise CacheError(f"Corrupt cache row {key[:12]}...: {e}") from e

            return CacheEntry(
                key=row.key,
                value=value,
                created_at=row.created_at,
                status=CacheStatus(row.status),
                owner_id=row.owner_id,
            )

    async def upsert(self, entry: CacheEntry) -> None:
        value_json = (
            json.dumps(entry.value, ensure_ascii=False, default=str)
            if entry.value is not None
            else None
        )

        for attempt in range(2):
            async with self._session_factory() as session:
                try:
                    await ContentCacheRepository(session).upsert(
                        key=entry.key,
                        value_json=value_json,
                        status=entry.status.value,
                        created_at=entry.created_at,
                        owner_id=entry.owner_id,
                    )
                    await session.commit()
                    return
                except IntegrityError:
                    # A concurrent writer inserted the same key first
                    await session.rollback()
                    if attempt == 1:
                        raise

    async def get_stats(self) -> dict[str, int]:
        async with self._session_factory() as session:
            return await ContentCacheRepository(session).get_cache_stats()
