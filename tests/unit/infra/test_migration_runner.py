"""Schema bootstrap tests on a throwaway SQLite file."""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine, inspect

from infrastructure.database.migration_runner import MigrationRunner

TABLES = {
    "connections",
    "cost_points",
    "anomalies",
    "notification_reservations",
    "run_locks",
    "user_contacts",
}


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'pipeline.db'}")
    yield engine
    engine.dispose()


class TestMigrationRunner:

    def test_upgrade_creates_schema(self, engine):
        runner = MigrationRunner(engine)
        assert not runner.status().is_up_to_date

        runner.upgrade()

        assert TABLES <= set(inspect(engine).get_table_names())
        status = runner.status()
        assert status.current_revision == "001"
        assert status.is_up_to_date

    def test_upgrade_is_idempotent(self, engine):
        runner = MigrationRunner(engine)
        runner.upgrade()
        runner.upgrade()
        assert runner.status().current_revision == "001"

    def test_downgrade_drops_schema(self, engine):
        runner = MigrationRunner(engine)
        runner.upgrade()
        runner.downgrade("base")
        assert not TABLES & set(inspect(engine).get_table_names())

    def test_create_all_matches_migrated_tables(self, engine):
        MigrationRunner(engine).create_all()
        assert TABLES <= set(inspect(engine).get_table_names())
