"""
Database configuration for the cost anomaly pipeline.

Centralises the connection URL, pool tuning parameters and the write chunk
size. PostgreSQL (psycopg2) is the production target; SQLite URLs are
accepted for tests and local development and skip the pool settings their
driver does not support.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from infrastructure.settings import AppSettings


@dataclass(frozen=True)
class DatabaseSettings:
    """Immutable database connection and pool configuration."""

    url: str
    pool_size: int = 10
    max_overflow: int = 5
    pool_timeout: int = 30
    upsert_chunk_size: int = 500

    @classmethod
    def from_app_settings(cls, settings: AppSettings) -> DatabaseSettings:
        return cls(
            url=settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            upsert_chunk_size=settings.db_upsert_chunk_size,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def engine_options(self) -> dict[str, Any]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`.

        Returns
        -------
        dict
            Pool options for server databases; thread-sharing options for
            SQLite.
        """
        if self.is_sqlite:
            return {"connect_args": {"check_same_thread": False}}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_pre_ping": True,
        }
