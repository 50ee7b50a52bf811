"""
SQLAlchemy engine and session-factory setup.

Repositories receive a :class:`sessionmaker` and open one short
transaction per operation, so nothing here is request-scoped.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import create_engine as sa_create_engine
from sqlalchemy.orm import sessionmaker

from .config import DatabaseSettings

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

# ---------------------------------------------------------------------------
# Engine factories
# ---------------------------------------------------------------------------


def build_engine(settings: DatabaseSettings) -> Engine:
    """Create a synchronous SQLAlchemy :class:`Engine`.

    Parameters
    ----------
    settings:
        Database configuration, including the URL.
    """
    return sa_create_engine(settings.url, echo=False, **settings.engine_options())


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory whose objects stay readable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)

