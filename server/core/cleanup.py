"""Periodic cache sweeper for the long-running service.

Follows the RecoverySweeper pattern: one asyncio task per instance, guarded by
a running flag so repeated starts never spawn a second loop.
"""
import asyncio
from typing import Dict, Optional, TYPE_CHECKING

from core.logging import get_logger

if TYPE_CHECKING:
    from core.cache import CacheManager

logger = get_logger(__name__)


class CleanupService:
    """Background cleanup to keep the cache table bounded.

    Each pass:
    - Deletes entries whose TTL has elapsed
    - Evicts the oldest entries beyond the configured max size
    """

    def __init__(self, cache: "CacheManager", interval: float):
        self.cache = cache
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the cleanup service background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info("Cleanup service started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the cleanup service gracefully."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Cleanup service stopped")

    def is_running(self) -> bool:
        return self._running

    async def _cleanup_loop(self) -> None:
        """Main cleanup loop - runs at configured interval."""
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Cleanup failed", error=str(e))
            await asyncio.sleep(self.interval)

    async def run_once(self) -> Dict[str, int]:
        """Run one sweep and return what was removed."""
        results = {
            "expired": await self.cache.cleanup(),
            "evicted": await self.cache.enforce_max_size(),
        }

        # Only log if something was cleaned up
        if sum(results.values()) > 0:
            logger.info("Cleanup completed", **results)
        return results
