"""
Explicit schema bootstrap.

Migrations are applied by calling :meth:`MigrationRunner.upgrade` once,
at application start-up or from the command line
(``python -m infrastructure.database.migration_runner``). ``upgrade`` is
idempotent. :meth:`MigrationRunner.create_all` builds the tables straight
from the ORM metadata for throwaway databases.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine

from .config import DatabaseSettings
from .engine import build_engine
from .models import Base

logger = logging.getLogger(__name__)

_DEFAULT_SCRIPT_LOCATION = Path(__file__).resolve().parent / "migrations"


@dataclass
class MigrationStatus:
    """Snapshot of the database's migration state."""

    current_revision: Optional[str]
    head_revision: Optional[str]
    is_up_to_date: bool


class MigrationRunner:
    """Run Alembic migrations against one database.

    Parameters
    ----------
    engine:
        A synchronous SQLAlchemy :class:`Engine`.
    script_location:
        Alembic script directory. Defaults to the ``migrations`` package
        next to this module.
    """

    def __init__(self, engine: Engine, script_location: Optional[str] = None) -> None:
        self._engine = engine
        self._script_location = script_location or str(_DEFAULT_SCRIPT_LOCATION)

    # ------------------------------------------------------------------
    # Alembic config helpers
    # ------------------------------------------------------------------

    def _make_alembic_config(self) -> AlembicConfig:
        cfg = AlembicConfig()
        cfg.set_main_option("script_location", self._script_location)
        cfg.set_main_option("sqlalchemy.url", self._engine.url.render_as_string(hide_password=False))
        return cfg

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def upgrade(self, revision: str = "head") -> None:
        """Apply all pending migrations up to *revision*."""
        cfg = self._make_alembic_config()
        with self._engine.begin() as conn:
            cfg.attributes["connection"] = conn
            alembic_command.upgrade(cfg, revision)
        logger.info("Database upgraded to %s", revision)

    def downgrade(self, revision: str) -> None:
        cfg = self._make_alembic_config()
        with self._engine.begin() as conn:
            cfg.attributes["connection"] = conn
            alembic_command.downgrade(cfg, revision)
        logger.info("Database downgraded to %s", revision)

    def create_all(self) -> None:
        """Create missing tables and indexes directly from the ORM metadata."""
        Base.metadata.create_all(self._engine)
        logger.info("Tables ensured from metadata")

    def status(self) -> MigrationStatus:
        with self._engine.connect() as conn:
            current_rev = MigrationContext.configure(conn).get_current_revision()
        head_rev = ScriptDirectory.from_config(self._make_alembic_config()).get_current_head()
        return MigrationStatus(
            current_revision=current_rev,
            head_revision=head_rev,
            is_up_to_date=(current_rev == head_rev),
        )


def main(argv: Optional[list[str]] = None) -> int:
    from infrastructure.observability.logging_config import setup_logging
    from infrastructure.settings import get_settings

    parser = argparse.ArgumentParser(description="Apply database migrations.")
    parser.add_argument("revision", nargs="?", default="head")
    parser.add_argument("--status", action="store_true", help="print migration status and exit")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level)
    if not settings.database_url:
        parser.error("APP_DATABASE_URL is not set")

    engine = build_engine(DatabaseSettings.from_app_settings(settings))
    runner = MigrationRunner(engine)
    try:
        if args.status:
            state = runner.status()
            logger.info(
                "Migration status: current=%s head=%s up_to_date=%s",
                state.current_revision,
                state.head_revision,
                state.is_up_to_date,
            )
            return 0 if state.is_up_to_date else 1
        runner.upgrade(args.revision)
        return 0
    finally:
        engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
