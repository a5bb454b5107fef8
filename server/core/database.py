"""Async database service with SQLModel and SQLAlchemy 2.0.

The API cache queries below raise on failure; `CacheManager` owns the
fail-open policy and turns store errors into safe defaults.
"""

from typing import Any, Dict, Iterable, List, Optional
from sqlmodel import SQLModel
from sqlalchemy import case, delete, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from models.cache import CacheEntry, CacheStats
from core.logging import get_logger

logger = get_logger(__name__)

# Columns replaced by an upsert; id and created_at keep their first-write values
UPSERT_COLUMNS = (
    "payload",
    "fetched_at",
    "ttl_seconds",
    "etag",
    "request_hash",
    "response_size_bytes",
    "is_stale",
)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            # Disable verbose database and asyncio logging
            import logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.dialects").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo}
            if not self.settings.is_sqlite:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow
                engine_kwargs["pool_pre_ping"] = True

            # Create async engine
            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            # Create session factory
            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            # Create tables
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully",
                        dialect=self.engine.dialect.name)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def ping(self) -> None:
        """Round-trip a trivial statement; raises if the store is unreachable."""
        async with self.get_session() as session:
            await session.execute(text("SELECT 1"))

    def _insert(self, table):
        """Dialect-specific INSERT supporting ON CONFLICT upserts."""
        dialect = self.engine.dialect.name if self.engine else None
        if dialect == "postgresql":
            return pg_insert(table)
        if dialect == "sqlite":
            return sqlite_insert(table)
        raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")

    # ============================================================================
    # API Cache
    # ============================================================================

    async def get_cache_entry(self, provider: str, key: str,
                              live_only: bool = False) -> Optional[CacheEntry]:
        """Fetch one row. With live_only, rows flagged stale are skipped."""
        async with self.get_session() as session:
            stmt = select(CacheEntry).where(
                CacheEntry.provider == provider,
                CacheEntry.cache_key == key,
            )
            if live_only:
                stmt = stmt.where(CacheEntry.is_stale.is_(False))
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_cache_entries(self, provider: str, keys: List[str]) -> List[CacheEntry]:
        """Fetch all rows of a provider whose key is in keys, in one query."""
        async with self.get_session() as session:
            stmt = select(CacheEntry).where(
                CacheEntry.provider == provider,
                CacheEntry.cache_key.in_(keys),
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def upsert_cache_entries(self, rows: Iterable[Dict[str, Any]]) -> int:
        """Insert or replace rows keyed on (provider, cache_key) in one statement."""
        rows = list(rows)
        if not rows:
            return 0

        table = CacheEntry.__table__
        stmt = self._insert(table).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.provider, table.c.cache_key],
            set_={column: stmt.excluded[column] for column in UPSERT_COLUMNS},
        )

        async with self.get_session() as session:
            await session.execute(stmt)
            await session.commit()
        return len(rows)

    async def touch_cache_entry(self, provider: str, key: str, now: float,
                                ttl_seconds: Optional[int] = None,
                                etag: Optional[str] = None) -> Optional[CacheEntry]:
        """Re-stamp an existing row as freshly fetched, keeping its payload."""
        async with self.get_session() as session:
            stmt = select(CacheEntry).where(
                CacheEntry.provider == provider,
                CacheEntry.cache_key == key,
            )
            result = await session.execute(stmt)
            entry = result.scalar_one_or_none()
            if not entry:
                return None

            entry.fetched_at = now
            entry.is_stale = False
            if ttl_seconds:
                entry.ttl_seconds = ttl_seconds
            if etag is not None:
                entry.etag = etag
            await session.commit()
            return entry

    async def mark_cache_stale(self, provider: str, keys: List[str]) -> int:
        """Flag rows as stale without deleting them."""
        async with self.get_session() as session:
            stmt = (
                update(CacheEntry)
                .where(CacheEntry.provider == provider, CacheEntry.cache_key.in_(keys))
                .values(is_stale=True)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def delete_cache_entry(self, provider: str, key: str) -> int:
        """Delete one row; deleting a missing key is not an error."""
        async with self.get_session() as session:
            stmt = (
                delete(CacheEntry)
                .where(CacheEntry.provider == provider, CacheEntry.cache_key == key)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def delete_cache_provider(self, provider: str) -> int:
        """Delete every row of a provider."""
        async with self.get_session() as session:
            stmt = (
                delete(CacheEntry)
                .where(CacheEntry.provider == provider)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def delete_all_cache(self) -> int:
        """Delete every row."""
        async with self.get_session() as session:
            stmt = delete(CacheEntry).execution_options(synchronize_session=False)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def delete_expired_cache(self, now: float) -> int:
        """Remove rows whose TTL has elapsed, regardless of the stale flag."""
        async with self.get_session() as session:
            stmt = (
                delete(CacheEntry)
                .where(CacheEntry.fetched_at + CacheEntry.ttl_seconds < now)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def evict_cache_overflow(self, max_size: int) -> int:
        """Trim the table to max_size rows, stale rows first, then oldest."""
        async with self.get_session() as session:
            total = await session.scalar(select(func.count()).select_from(CacheEntry))
            excess = (total or 0) - max_size
            if excess <= 0:
                return 0

            victims = await session.execute(
                select(CacheEntry.id)
                .order_by(CacheEntry.is_stale.desc(), CacheEntry.fetched_at.asc())
                .limit(excess)
            )
            ids = list(victims.scalars().all())

            stmt = (
                delete(CacheEntry)
                .where(CacheEntry.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def get_cache_stats(self) -> CacheStats:
        """Row counts, stored bytes and live rows per provider."""
        async with self.get_session() as session:
            totals = await session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(case((CacheEntry.is_stale.is_(True), 1), else_=0)), 0),
                    func.coalesce(func.sum(CacheEntry.response_size_bytes), 0),
                ).select_from(CacheEntry)
            )
            total_entries, stale_entries, total_size = totals.one()

            per_provider = await session.execute(
                select(CacheEntry.provider, func.count())
                .where(CacheEntry.is_stale.is_(False))
                .group_by(CacheEntry.provider)
            )

            return CacheStats(
                total_entries=int(total_entries or 0),
                stale_entries=int(stale_entries or 0),
                total_size=int(total_size or 0),
                providers={provider: int(count) for provider, count in per_provider.all()},
            )
