"""Environment-driven configuration with Pydantic v2."""

from typing import Dict, Literal, Optional
from pathlib import Path
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class CacheConfig(BaseModel):
    """Cache tuning values read once at startup."""

    default_ttl: int = 3600
    max_size: int = 10000
    cleanup_interval: float = 3600


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3020, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/cache.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=5, ge=1, le=100)
    database_max_overflow: int = Field(default=10, ge=0, le=100)

    # Cache Configuration
    cache_default_ttl: int = Field(default=3600, ge=60)
    cache_max_size: int = Field(default=10000, ge=100)
    cache_cleanup_interval: int = Field(default=3600, ge=300)
    cache_cleanup_enabled: bool = Field(default=True)
    cache_single_flight: bool = Field(default=True)
    cache_provider_ttls: Dict[str, int] = Field(default_factory=dict)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("cache_provider_ttls")
    @classmethod
    def validate_provider_ttls(cls, v):
        """Per-provider TTLs share the default TTL's lower bound."""
        for provider, ttl in v.items():
            if ttl < 60:
                raise ValueError(f"TTL for provider '{provider}' must be at least 60 seconds")
        return {provider.lower(): ttl for provider, ttl in v.items()}

    @property
    def cache(self) -> CacheConfig:
        """Cache settings as a single record."""
        return CacheConfig(
            default_ttl=self.cache_default_ttl,
            max_size=self.cache_max_size,
            cleanup_interval=self.cache_cleanup_interval,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
