import logging

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ingest.core.exceptions import StorageError
from ingest.core.signing import now_ms
from ingest.db.base import Base
from ingest.models import KVEntry

logger = logging.getLogger(__name__)


class MetadataStore:
    """String key/value store with per-entry TTL, backed by one SQL table.

    Single-key writes are atomic and last-write-wins. ``put_many`` commits
    several keys in one transaction.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    @staticmethod
    def _expiry(ttl_seconds: int | None) -> int | None:
        return now_ms() + ttl_seconds * 1000 if ttl_seconds else None

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self.put_many({key: value}, ttl_seconds)

    async def put_many(self, entries: dict[str, str], ttl_seconds: int | None = None) -> None:
        expires_at = self._expiry(ttl_seconds)
        try:
            async with self._session_factory() as session:
                for key, value in entries.items():
                    await session.merge(KVEntry(key=key, value=value, expires_at=expires_at))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Metadata write failed for {sorted(entries)}") from exc

    async def get(self, key: str) -> str | None:
        try:
            async with self._session_factory() as session:
                entry = await session.get(KVEntry, key)
                if entry is None:
                    return None
                if entry.expires_at is not None and entry.expires_at <= now_ms():
                    await session.delete(entry)
                    await session.commit()
                    return None
                return entry.value
        except SQLAlchemyError as exc:
            raise StorageError(f"Metadata read failed for {key}") from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(delete(KVEntry).where(KVEntry.key.in_(keys)))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Metadata delete failed for {list(keys)}") from exc

    async def list_keys(self, prefix: str, limit: int | None = None) -> list[str]:
        stmt = (
            select(KVEntry.key)
            .where(
                KVEntry.key.startswith(prefix, autoescape=True),
                or_(KVEntry.expires_at.is_(None), KVEntry.expires_at > now_ms()),
            )
            .order_by(KVEntry.key)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StorageError(f"Metadata listing failed for prefix {prefix}") from exc

    async def purge_expired(self) -> int:
        stmt = delete(KVEntry).where(
            KVEntry.expires_at.is_not(None), KVEntry.expires_at <= now_ms()
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError("Metadata purge failed") from exc
        removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d expired metadata entries", removed)
        return removed
