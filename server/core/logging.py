"""structlog setup for the cache service.

Everything logs through stdlib handlers so uvicorn and SQLAlchemy records land
in the same stream as the cache's own key/value events.
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from core.config import Settings


def _handlers(settings: Settings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        path = Path(settings.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path))
    return handlers


def _processors(settings: Settings) -> list:
    shared = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        return [
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            *shared,
            structlog.processors.JSONRenderer(),
        ]

    return [
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        *shared,
        structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=30,
            exception_formatter=structlog.dev.plain_traceback,
        ),
    ]


def configure_logging(settings: Settings) -> None:
    """Route stdlib and structlog output to stdout and the optional log file."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handlers = _handlers(settings)
    for handler in handlers:
        handler.setLevel(level)
    logging.basicConfig(level=level, handlers=handlers, format="%(message)s")

    structlog.configure(
        processors=_processors(settings),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        provider: str, key: str, hit: Optional[bool] = None,
                        **fields) -> None:
    """Debug record of one operation on provider:key; hit is set for reads."""
    if hit is not None:
        fields["cache_hit"] = hit
    logger.debug(f"Cache {operation}", provider=provider, cache_key=key, **fields)
