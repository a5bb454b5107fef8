"""Persistent API response cache model.

One row per (provider, cache_key). Timestamps are unix floats so expiry math
(`fetched_at + ttl_seconds`) runs unchanged on SQLite and PostgreSQL.
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import Index, UniqueConstraint
from sqlmodel import SQLModel, Field, Column, JSON


class ApiProvider(str, Enum):
    """Known external data sources. Any other string tag is also accepted."""

    EPC = "epc"
    FLOOD = "flood"
    PLANNING = "planning"
    POSTCODES = "postcodes"
    OSPLACES = "osplaces"
    INSPIRE = "inspire"
    COMPANIES = "companies"
    HMLR = "hmlr"
    CRIME = "crime"
    EDUCATION = "education"


class CacheEntry(SQLModel, table=True):
    """Cached response body for one provider request."""

    __tablename__ = "api_cache"
    __table_args__ = (
        UniqueConstraint("provider", "cache_key", name="uq_api_cache_provider_key"),
        Index("idx_api_cache_ttl", "fetched_at", "ttl_seconds"),
    )

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True, max_length=32)
    provider: str = Field(max_length=64, index=True)
    cache_key: str = Field(max_length=512)
    payload: Any = Field(default=None, sa_column=Column(JSON))
    fetched_at: float = Field(default_factory=time.time, index=True)
    ttl_seconds: int = Field(default=3600)
    etag: Optional[str] = Field(default=None, max_length=512)
    request_hash: str = Field(max_length=64)
    response_size_bytes: int = Field(default=0)
    is_stale: bool = Field(default=False, index=True)
    created_at: float = Field(default_factory=time.time)

    @property
    def expires_at(self) -> float:
        return self.fetched_at + self.ttl_seconds


class CacheInfo(BaseModel):
    """Expiry metadata for a cache entry, without its payload."""

    cached: bool
    cache_key: str
    expires_at: str  # ISO-8601, UTC
    ttl: int
    etag: Optional[str] = None


class CacheStats(BaseModel):
    """Aggregate view over the whole cache table."""

    total_entries: int = 0
    stale_entries: int = 0
    total_size: int = 0
    providers: Dict[str, int] = {}  # live (non-stale) rows per provider
