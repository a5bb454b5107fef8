"""Shared fixtures: a temporary SQLite store and a controllable clock."""

import pytest
import pytest_asyncio

from core.cache import CacheManager
from core.config import Settings
from core.database import Database


class FakeClock:
    """Stands in for time.time so TTL tests never sleep."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(tmp_path, **overrides) -> Settings:
    values = {"database_url": f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest_asyncio.fixture
async def cache(settings, database, clock):
    manager = CacheManager(settings, database, clock=clock)
    await manager.startup()
    yield manager
    await manager.shutdown()


@pytest.fixture
def offline_cache(settings, clock):
    """A manager whose store was never started, so every query fails."""
    return CacheManager(settings, Database(settings), clock=clock)
