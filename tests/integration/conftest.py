"""Integration test fixtures using testcontainers for PostgreSQL."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))


@pytest.fixture(scope="session")
def postgres_url():
    """Provide a PostgreSQL URL via testcontainers.

    Skips when Docker (or testcontainers) is unavailable.
    """
    try:
        from testcontainers.postgres import PostgresContainer

        with PostgresContainer("postgres:16-alpine") as pg:
            yield pg.get_connection_url()
    except Exception:
        pytest.skip("PostgreSQL testcontainer unavailable")


@pytest.fixture(scope="session")
def migrated_engine(postgres_url):
    """Engine on a database brought to head through the migration runner."""
    from infrastructure.database.config import DatabaseSettings
    from infrastructure.database.engine import build_engine
    from infrastructure.database.migration_runner import MigrationRunner

    engine = build_engine(DatabaseSettings(url=postgres_url, pool_size=20, max_overflow=10))
    MigrationRunner(engine).upgrade()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(migrated_engine):
    """Session factory over freshly truncated tables."""
    from sqlalchemy import text

    from infrastructure.database.engine import build_session_factory

    with migrated_engine.begin() as conn:
        conn.execute(
            text(
                "TRUNCATE connections, cost_points, anomalies, "
                "notification_reservations, run_locks, user_contacts"
            )
        )
    return build_session_factory(migrated_engine)
