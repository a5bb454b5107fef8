"""Cache administration routes."""

from fastapi import APIRouter, Depends

from core.container import container
from core.cache import CacheManager
from core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


def get_cache() -> CacheManager:
    return container.cache()


@router.get("/stats")
async def get_stats(cache: CacheManager = Depends(get_cache)):
    """Entry counts, stored bytes and live entries per provider."""
    stats = await cache.get_stats()
    return {"success": True, "stats": stats.model_dump()}


@router.post("/cleanup")
async def run_cleanup(cache: CacheManager = Depends(get_cache)):
    """Delete expired entries now instead of waiting for the sweeper."""
    deleted = await cache.cleanup()
    evicted = await cache.enforce_max_size()
    logger.info("Manual cache cleanup", deleted=deleted, evicted=evicted)
    return {"success": True, "deleted": deleted, "evicted": evicted}


@router.delete("")
async def clear_all(cache: CacheManager = Depends(get_cache)):
    success = await cache.clear_all()
    return {"success": success}


@router.delete("/{provider}")
async def clear_provider(provider: str, cache: CacheManager = Depends(get_cache)):
    success = await cache.clear_provider(provider)
    return {"success": success, "provider": provider}


@router.get("/{provider}/{key:path}")
async def get_info(provider: str, key: str, cache: CacheManager = Depends(get_cache)):
    """Expiry metadata for one entry."""
    info = await cache.get_info(provider, key)
    if info is None:
        return {"success": True, "found": False, "info": None}
    return {"success": True, "found": True, "info": info.model_dump()}


@router.delete("/{provider}/{key:path}")
async def invalidate(provider: str, key: str, cache: CacheManager = Depends(get_cache)):
    success = await cache.invalidate(provider, key)
    return {"success": success}


@router.post("/{provider}/{key:path}/stale")
async def mark_stale(provider: str, key: str, cache: CacheManager = Depends(get_cache)):
    success = await cache.mark_stale(provider, key)
    return {"success": success}
