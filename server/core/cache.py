"""Provider-keyed API response cache backed by the relational store.

The cache is an optimization layer: every store-facing method logs
infrastructure failures and returns a safe default (None / False / 0 / empty
stats) so a cache outage degrades to "always fetch fresh". Only programming
errors (unserializable payloads) raise.
"""

import hashlib
import json
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union, TYPE_CHECKING

from core.config import Settings
from core.logging import get_logger, log_cache_operation
from models.cache import CacheEntry, CacheInfo, CacheStats

if TYPE_CHECKING:
    from core.cleanup import CleanupService
    from core.database import Database
    from services.cache_aside import SingleFlight

logger = get_logger(__name__)

ProviderTag = Union[str, Enum]


class CacheError(Exception):
    """Base exception for cache programming errors."""


class InvalidTTLError(CacheError, ValueError):
    """An explicit TTL that would write an already expired entry."""


class CacheSerializationError(CacheError):
    """Payload could not be serialized to JSON."""

    def __init__(self, provider: str, key: str, reason: str):
        self.provider = provider
        self.key = key
        super().__init__(f"[{provider}:{key}] payload is not JSON-serializable: {reason}")


def provider_value(provider: ProviderTag) -> str:
    """Store enum members by value, plain strings as given."""
    if isinstance(provider, Enum):
        return str(provider.value)
    return str(provider)


def serialize_payload(provider: str, key: str, value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise CacheSerializationError(provider, key, str(e)) from e


def generate_request_hash(provider: str, key: str, value: Any) -> str:
    """SHA256 over canonical JSON of (provider, key, value).

    `value` must already be JSON-shaped (string object keys), as produced by
    round-tripping it through serialize_payload.

    Informational only: identical writes produce identical hashes, which makes
    change detection a string comparison.
    """
    canonical = json.dumps(
        {"provider": provider, "key": key, "value": value},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def is_valid(entry: CacheEntry, now: float) -> bool:
    """The single validity rule shared by every read path."""
    return not entry.is_stale and now <= entry.fetched_at + entry.ttl_seconds


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class CacheManager:
    """Sole authority for reading, writing and retiring cache entries.

    Construct once at application start and pass it to whatever needs caching.
    `clock` returns unix seconds and exists so tests can move time.
    """

    def __init__(self, settings: Settings, database: "Database",
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.config = settings.cache
        self.database = database
        self.clock = clock
        self.single_flight: Optional["SingleFlight"] = None
        self._sweeper: Optional["CleanupService"] = None

        if settings.cache_single_flight:
            from services.cache_aside import SingleFlight
            self.single_flight = SingleFlight()

    async def startup(self):
        """Log effective cache configuration."""
        logger.info(
            "Cache manager initialized",
            default_ttl=self.config.default_ttl,
            max_size=self.config.max_size,
            cleanup_interval=self.config.cleanup_interval,
            single_flight=self.single_flight is not None,
        )

    async def shutdown(self):
        """Stop the background sweeper if it is running."""
        await self.stop_cleanup()

    def resolve_ttl(self, provider: str, ttl_seconds: Optional[int] = None) -> int:
        """Explicit TTL, then the provider override, then the default."""
        if ttl_seconds is not None and ttl_seconds < 0:
            raise InvalidTTLError(f"TTL for provider '{provider}' must not be negative, got {ttl_seconds}")
        if ttl_seconds:
            return int(ttl_seconds)
        return self.settings.cache_provider_ttls.get(provider.lower(), self.config.default_ttl)

    def _build_row(self, provider: str, key: str, value: Any, ttl_seconds: int,
                   etag: Optional[str], now: float) -> Dict[str, Any]:
        serialized = serialize_payload(provider, key, value)
        payload = json.loads(serialized)
        return {
            "id": uuid.uuid4().hex,
            "provider": provider,
            "cache_key": key,
            "payload": payload,
            "fetched_at": now,
            "ttl_seconds": ttl_seconds,
            "etag": etag,
            "request_hash": generate_request_hash(provider, key, payload),
            "response_size_bytes": len(serialized.encode("utf-8")),
            "is_stale": False,
            "created_at": now,
        }

    # ============================================================================
    # Single-key operations
    # ============================================================================

    async def get(self, provider: ProviderTag, key: str) -> Optional[Any]:
        """Return the payload of a valid entry, or None.

        An expired row is marked stale before None is returned so it is never
        served again, even under clock skew.
        """
        provider = provider_value(provider)
        try:
            entry = await self.database.get_cache_entry(provider, key, live_only=True)
            if not entry:
                log_cache_operation(logger, "get", provider, key, hit=False)
                return None

            if not is_valid(entry, self.clock()):
                log_cache_operation(logger, "get", provider, key, hit=False, expired=True)
                await self.mark_stale(provider, key)
                return None

            log_cache_operation(logger, "get", provider, key, hit=True)
            return entry.payload

        except Exception as e:
            logger.error("Cache get failed", provider=provider, key=key, error=str(e))
            return None

    async def set(self, provider: ProviderTag, key: str, value: Any,
                  ttl_seconds: Optional[int] = None, etag: Optional[str] = None) -> bool:
        """Upsert a fresh entry. Returns False when the store write failed.

        Raises CacheSerializationError for payloads JSON cannot represent.
        """
        provider = provider_value(provider)
        ttl = self.resolve_ttl(provider, ttl_seconds)
        row = self._build_row(provider, key, value, ttl, etag, self.clock())

        try:
            await self.database.upsert_cache_entries([row])
            log_cache_operation(logger, "set", provider, key, ttl=ttl,
                                size=row["response_size_bytes"])
            return True
        except Exception as e:
            logger.error("Cache set failed", provider=provider, key=key, error=str(e))
            return False

    async def exists(self, provider: ProviderTag, key: str) -> bool:
        """True iff a valid entry exists. Never changes the stale flag."""
        provider = provider_value(provider)
        try:
            entry = await self.database.get_cache_entry(provider, key)
            return entry is not None and is_valid(entry, self.clock())
        except Exception as e:
            logger.error("Cache exists check failed", provider=provider, key=key, error=str(e))
            return False

    async def get_info(self, provider: ProviderTag, key: str) -> Optional[CacheInfo]:
        """Expiry metadata for a row, valid or not, without its payload."""
        provider = provider_value(provider)
        try:
            entry = await self.database.get_cache_entry(provider, key)
            if not entry:
                return None

            return CacheInfo(
                cached=is_valid(entry, self.clock()),
                cache_key=key,
                expires_at=isoformat_utc(entry.expires_at),
                ttl=entry.ttl_seconds,
                etag=entry.etag,
            )
        except Exception as e:
            logger.error("Cache info failed", provider=provider, key=key, error=str(e))
            return None

    async def invalidate(self, provider: ProviderTag, key: str) -> bool:
        """Hard-delete an entry. Succeeds when the key was never cached."""
        provider = provider_value(provider)
        try:
            deleted = await self.database.delete_cache_entry(provider, key)
            log_cache_operation(logger, "invalidate", provider, key, deleted=deleted)
            return True
        except Exception as e:
            logger.error("Cache invalidate failed", provider=provider, key=key, error=str(e))
            return False

    async def mark_stale(self, provider: ProviderTag, key: str) -> bool:
        """Make an entry unreadable while keeping the row for diagnostics."""
        provider = provider_value(provider)
        try:
            await self.database.mark_cache_stale(provider, [key])
            log_cache_operation(logger, "mark_stale", provider, key)
            return True
        except Exception as e:
            logger.error("Cache mark stale failed", provider=provider, key=key, error=str(e))
            return False

    async def revalidate(self, provider: ProviderTag, key: str,
                         ttl_seconds: Optional[int] = None,
                         etag: Optional[str] = None) -> Optional[Any]:
        """Re-stamp a stored row after an upstream "not modified" answer.

        Returns the stored payload, or None if the row no longer exists.
        """
        provider = provider_value(provider)
        if ttl_seconds:
            ttl_seconds = self.resolve_ttl(provider, ttl_seconds)
        try:
            entry = await self.database.touch_cache_entry(
                provider, key, self.clock(), ttl_seconds=ttl_seconds, etag=etag
            )
            if not entry:
                return None
            log_cache_operation(logger, "revalidate", provider, key, ttl=entry.ttl_seconds)
            return entry.payload
        except Exception as e:
            logger.error("Cache revalidate failed", provider=provider, key=key, error=str(e))
            return None

    # ============================================================================
    # Batch operations
    # ============================================================================

    async def batch_get(self, provider: ProviderTag, keys: List[str]) -> Dict[str, Optional[Any]]:
        """Look up many keys in one round trip; every key appears in the result."""
        provider = provider_value(provider)
        results: Dict[str, Optional[Any]] = {key: None for key in keys}
        if not keys:
            return results

        try:
            entries = await self.database.get_cache_entries(provider, list(results))
            now = self.clock()
            expired: List[str] = []

            for entry in entries:
                if is_valid(entry, now):
                    results[entry.cache_key] = entry.payload
                elif not entry.is_stale:
                    expired.append(entry.cache_key)

            if expired:
                await self.database.mark_cache_stale(provider, expired)

            hits = sum(1 for value in results.values() if value is not None)
            logger.debug("Cache batch get", provider=provider, requested=len(results),
                         hits=hits, expired=len(expired))
            return results

        except Exception as e:
            logger.error("Cache batch get failed", provider=provider, keys=len(keys), error=str(e))
            return {key: None for key in keys}

    async def batch_set(self, provider: ProviderTag, entries: Iterable[Mapping[str, Any]]) -> bool:
        """Upsert many entries in one statement.

        Each entry is a mapping with "key", "value" and optional "ttl" / "etag".
        Repeated keys collapse to the last occurrence. Whether a failed write
        leaves some rows applied is up to the store; a single statement is
        atomic on SQLite and PostgreSQL.
        """
        provider = provider_value(provider)
        now = self.clock()
        rows: Dict[str, Dict[str, Any]] = {}
        for item in entries:
            key = item["key"]
            ttl = self.resolve_ttl(provider, item.get("ttl"))
            rows[key] = self._build_row(provider, key, item["value"], ttl, item.get("etag"), now)

        if not rows:
            return True

        try:
            await self.database.upsert_cache_entries(rows.values())
            logger.debug("Cache batch set", provider=provider, count=len(rows))
            return True
        except Exception as e:
            logger.error("Cache batch set failed", provider=provider, count=len(rows), error=str(e))
            return False

    # ============================================================================
    # Bulk maintenance
    # ============================================================================

    async def clear_provider(self, provider: ProviderTag) -> bool:
        """Delete every entry of one provider."""
        provider = provider_value(provider)
        try:
            deleted = await self.database.delete_cache_provider(provider)
            logger.info("Cache provider cleared", provider=provider, deleted=deleted)
            return True
        except Exception as e:
            logger.error("Cache clear provider failed", provider=provider, error=str(e))
            return False

    async def clear_all(self) -> bool:
        """Delete every entry."""
        try:
            deleted = await self.database.delete_all_cache()
            logger.info("Cache cleared", deleted=deleted)
            return True
        except Exception as e:
            logger.error("Cache clear all failed", error=str(e))
            return False

    async def cleanup(self) -> int:
        """Delete rows whose TTL elapsed. Returns the number deleted."""
        try:
            return await self.database.delete_expired_cache(self.clock())
        except Exception as e:
            logger.error("Cache cleanup failed", error=str(e))
            return 0

    async def enforce_max_size(self) -> int:
        """Evict rows beyond the configured max size. Returns the number evicted."""
        try:
            return await self.database.evict_cache_overflow(self.config.max_size)
        except Exception as e:
            logger.error("Cache eviction failed", max_size=self.config.max_size, error=str(e))
            return 0

    async def get_stats(self) -> CacheStats:
        """Aggregate counts; empty stats when the store is unavailable."""
        try:
            return await self.database.get_cache_stats()
        except Exception as e:
            logger.error("Cache stats failed", error=str(e))
            return CacheStats()

    # ============================================================================
    # Background sweeper
    # ============================================================================

    async def start_cleanup(self, interval: Optional[float] = None) -> None:
        """Start the periodic sweeper. Calling it again is a no-op."""
        from core.cleanup import CleanupService

        if self._sweeper is None:
            self._sweeper = CleanupService(self, interval or self.config.cleanup_interval)
        await self._sweeper.start()

    async def stop_cleanup(self) -> None:
        """Stop the periodic sweeper if running."""
        if self._sweeper is not None:
            await self._sweeper.stop()
            self._sweeper = None

    def is_cleanup_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_running()
