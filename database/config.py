"""
Database Configuration

Loads database settings from environment variables. The exposure store
runs against PostgreSQL through asyncpg; JSONB containment queries on
notification chain paths rule out other backends.
"""

import re
from functools import lru_cache

from pydantic_settings import BaseSettings


class DatabaseSettings(BaseSettings):
    """Database configuration loaded from environment."""

    # Main database URL
    database_url: str = ""

    # Connection pool settings
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800  # 30 minutes

    # Managed Postgres (Neon etc.) needs SSL; a local container does not
    db_ssl: bool = True

    # Create missing tables at startup (development only, no migrations)
    create_tables: bool = False

    # Echo SQL statements (for debugging)
    echo_sql: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def async_database_url(self) -> str:
        """
        Convert standard PostgreSQL URL to async version.
        Ensures +asyncpg driver is specified.
        """
        url = self.database_url

        if not url:
            raise ValueError("DATABASE_URL environment variable is not set")

        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)

        if "postgresql://" in url and "+asyncpg" not in url:
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

        # asyncpg rejects libpq-only parameters; SSL is passed via connect_args
        url = re.sub(r"[?&](channel_binding|sslmode)=[^&]*", "", url)
        if "?" not in url and "&" in url:
            url = url.replace("&", "?", 1)

        return url


@lru_cache()
def get_database_settings() -> DatabaseSettings:
    """
    Get cached database settings.
    Uses lru_cache to avoid reloading on every call.
    """
    return DatabaseSettings()


def get_database_url() -> str:
    """Get the async database URL."""
    return get_database_settings().async_database_url
