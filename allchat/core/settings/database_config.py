"""Database connection configuration."""

from typing import Any

from pydantic import BaseModel, SecretStr


class DatabaseConfig(BaseModel, frozen=True):
    """Database connection settings."""

    url: SecretStr

    @property
    def async_url(self) -> str:
        """DB URL with the async driver for PostgreSQL."""
        base = self.url.get_secret_value()
        for prefix in ("postgres://", "postgresql://"):
            if base.startswith(prefix):
                return "postgresql+asyncpg://" + base[len(prefix):]
        return base

    @property
    def is_sqlite(self) -> bool:
        """Check if the URL points at SQLite."""
        return self.async_url.startswith("sqlite")

    @property
    def pool_options(self) -> dict[str, Any]:
        """Connection pool arguments (SQLite pools take none)."""
        if self.is_sqlite:
            return {}
        return {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_recycle": 3600,
            "pool_pre_ping": True,
        }
