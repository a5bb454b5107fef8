"""
FastAPI service hosting the API response cache.

Handlers that wrap third-party providers get the CacheManager from the
container; the routes here only expose maintenance and health.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from core.container import container
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import cache as cache_router

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
import logging
logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting API cache service")
    set_startup_time()

    await container.database().startup()
    cache = container.cache()
    await cache.startup()

    if settings.cache_cleanup_enabled:
        await cache.start_cleanup()

    logger.info("Services started successfully")
    yield

    # Shutdown
    await cache.shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="API Cache Service",
    version="1.0.0",
    description="Provider-keyed TTL cache for external property data lookups",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)

app.include_router(cache_router.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    status = await get_health_status(container.database(), container.cache())
    status["timestamp"] = datetime.now().isoformat()
    return status


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting API cache service",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="warning",
    )
