"""Cache-aside helpers composed on top of CacheManager.

The cache never calls a fetcher on its own: callers hand one in, and it runs
only on a miss. Fetcher errors always propagate to the caller unchanged.
"""

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, TypeVar

from core.cache import CacheManager, ProviderTag, provider_value
from core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SingleFlight:
    """Collapse concurrent loads of the same key into one call.

    The first caller for a key starts the loader as its own task; every caller,
    the first included, awaits that task. Cancelling a caller only stops that
    caller from waiting, the load carries on for the others. Scope is one
    process.
    """

    def __init__(self):
        self._calls: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    async def do(self, key: Hashable, loader: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(loader())
            self._calls[key] = task
            task.add_done_callback(functools.partial(self._finished, key))
        return await asyncio.shield(task)

    def _finished(self, key: Hashable, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        if not task.cancelled():
            task.exception()  # mark retrieved when every caller went away


@dataclass
class ETagResult:
    """What an etag-aware fetcher returns.

    not_modified=True means the upstream confirmed the stored copy is current;
    data is ignored in that case.
    """

    data: Any = None
    etag: Optional[str] = None
    not_modified: bool = False


async def _load(cache: CacheManager, provider: str, key: str,
                loader: Callable[[], Awaitable[T]]) -> T:
    if cache.single_flight is None:
        return await loader()
    return await cache.single_flight.do((provider, key), loader)


async def get_or_set(cache: CacheManager, provider: ProviderTag, key: str,
                     fetcher: Callable[[], Awaitable[T]],
                     ttl_seconds: Optional[int] = None) -> T:
    """Return the cached value, or fetch, cache and return a fresh one.

    A failed cache write is logged by the manager and does not prevent the
    fresh value from being returned.
    """
    provider = provider_value(provider)
    hit = await cache.get(provider, key)
    if hit is not None:
        return hit

    async def load() -> T:
        # a load that finished just before this one started may have filled it
        hit = await cache.get(provider, key)
        if hit is not None:
            return hit
        data = await fetcher()
        await cache.set(provider, key, data, ttl_seconds)
        return data

    return await _load(cache, provider, key, load)


async def get_or_set_with_etag(cache: CacheManager, provider: ProviderTag, key: str,
                               fetcher: Callable[[Optional[str]], Awaitable[ETagResult]],
                               ttl_seconds: Optional[int] = None) -> Any:
    """Cache-aside with conditional refresh.

    On a miss the etag stored with the previous (now stale or expired) copy is
    passed to the fetcher. A not-modified answer re-stamps the stored row
    instead of rewriting it.
    """
    provider = provider_value(provider)
    hit = await cache.get(provider, key)
    if hit is not None:
        return hit

    async def load() -> Any:
        hit = await cache.get(provider, key)
        if hit is not None:
            return hit
        info = await cache.get_info(provider, key)
        etag = info.etag if info else None

        result = await fetcher(etag)
        if result.not_modified:
            refreshed = await cache.revalidate(provider, key, ttl_seconds, etag=result.etag)
            if refreshed is not None:
                logger.debug("Upstream not modified", provider=provider, cache_key=key)
                return refreshed
            # Row vanished between the etag read and the revalidation
            result = await fetcher(None)

        await cache.set(provider, key, result.data, ttl_seconds, result.etag)
        return result.data

    return await _load(cache, provider, key, load)


def with_cache(cache: CacheManager, provider: ProviderTag,
               key_fn: Callable[..., str], fn: Callable[..., Awaitable[T]],
               ttl_seconds: Optional[int] = None) -> Callable[..., Awaitable[T]]:
    """Wrap an async function so its results are cached under key_fn(*args)."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs) -> T:
        key = key_fn(*args, **kwargs)
        return await get_or_set(cache, provider, key, lambda: fn(*args, **kwargs), ttl_seconds)

    return wrapper


def cached(cache: CacheManager, provider: ProviderTag,
           key_fn: Callable[..., str], ttl_seconds: Optional[int] = None):
    """Decorator form of with_cache."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        return with_cache(cache, provider, key_fn, fn, ttl_seconds)

    return decorator
