"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheManager


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Persistent store behind the cache
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # One cache manager per process, handed to every caller that needs caching
    cache = providers.Singleton(
        CacheManager,
        settings=settings,
        database=database
    )


# Global container instance
container = Container()
