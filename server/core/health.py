"""Health check utilities for daemon monitoring.

Provides uptime tracking and health status for the /health endpoint.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from core.database import Database
    from core.cache import CacheManager

HEALTH_PROVIDER = "_health"
HEALTH_KEY = "_health_check"

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def check_database(database: "Database") -> bool:
    """Check database connectivity."""
    try:
        await database.ping()
        return True
    except Exception:
        return False


async def check_cache(cache: "CacheManager") -> bool:
    """Write, read back and delete a probe entry."""
    if not await cache.set(HEALTH_PROVIDER, HEALTH_KEY, "ok", ttl_seconds=60):
        return False
    result = await cache.get(HEALTH_PROVIDER, HEALTH_KEY)
    await cache.invalidate(HEALTH_PROVIDER, HEALTH_KEY)
    return result == "ok"


async def get_health_status(database: "Database", cache: "CacheManager") -> Dict[str, Any]:
    """Get health status for /health endpoint.

    Returns:
        Dict containing status, uptime, check results and sweeper state.
    """
    db_healthy = await check_database(database)
    cache_healthy = await check_cache(cache)

    # The cache fails open, so a broken store only degrades the service
    overall_status = "healthy" if (db_healthy and cache_healthy) else "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "database": db_healthy,
            "cache": cache_healthy,
        },
        "features": {
            "cleanup": cache.is_cleanup_running(),
            "single_flight": cache.single_flight is not None,
        },
    }
