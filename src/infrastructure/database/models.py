"""
SQLAlchemy 2.0+ ORM models for the cost anomaly pipeline.

Tables
------
* ``connections``                -- one billing connection per user
* ``cost_points``                -- daily spend per (user, day, dimension)
* ``anomalies``                  -- scored spend jumps with lifecycle status
* ``notification_reservations``  -- at-most-once delivery claims
* ``run_locks``                  -- batch job mutual exclusion
* ``user_contacts``              -- delivery addresses (read-only here)

Column types are portable so the same metadata runs on PostgreSQL and on
SQLite in tests. Enumerations are stored as their lower-case string values
and validated by the repositories' decode step.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for every ORM model."""
    pass


# ---------------------------------------------------------------------------
# ConnectionModel
# ---------------------------------------------------------------------------

class ConnectionModel(Base):
    """A user's billing account link. The secret is stored encrypted only."""

    __tablename__ = "connections"
    __table_args__ = (
        Index("ix_connections_status_last_sync", "status", "last_sync_at"),
    )

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    access_key_id: Mapped[str] = mapped_column(String(128), nullable=False)
    secret_access_key_enc: Mapped[str] = mapped_column(Text, nullable=False)
    region: Mapped[str] = mapped_column(String(32), nullable=False, default="us-east-1")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="connected")
    last_validated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<Connection(user_id={self.user_id!r}, status={self.status!r})>"


# ---------------------------------------------------------------------------
# CostPointModel
# ---------------------------------------------------------------------------

class CostPointModel(Base):
    """Daily spend for one dimension; ``TOTAL`` holds the account total."""

    __tablename__ = "cost_points"
    __table_args__ = (
        Index("ix_cost_points_user_day", "user_id", "day"),
        CheckConstraint("amount >= 0", name="ck_cost_points_amount_non_negative"),
    )

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    dimension: Mapped[str] = mapped_column(String(255), primary_key=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="aws_ce")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CostPoint(user_id={self.user_id!r}, day={self.day!r}, "
            f"dimension={self.dimension!r}, amount={self.amount!r})>"
        )


# ---------------------------------------------------------------------------
# AnomalyModel
# ---------------------------------------------------------------------------

class AnomalyModel(Base):
    """A scored spend jump. ``status`` and ``insight*`` survive re-scoring."""

    __tablename__ = "anomalies"
    __table_args__ = (
        UniqueConstraint("user_id", "day", "dimension", name="uq_anomalies_user_day_dimension"),
        Index("ix_anomalies_user_day", "user_id", "day"),
        Index("ix_anomalies_user_status_day", "user_id", "status", "day"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    dimension: Mapped[str] = mapped_column(String(255), nullable=False)
    observed: Mapped[float] = mapped_column(Float, nullable=False)
    baseline: Mapped[float] = mapped_column(Float, nullable=False)
    pct_change: Mapped[float] = mapped_column(Float, nullable=False)
    z_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    insight: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONVariant, nullable=True)
    insight_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Anomaly(user_id={self.user_id!r}, day={self.day!r}, "
            f"dimension={self.dimension!r}, severity={self.severity!r})>"
        )


# ---------------------------------------------------------------------------
# NotificationReservationModel
# ---------------------------------------------------------------------------

class NotificationReservationModel(Base):
    """Claim record guarding one delivery per (user, kind, channel, day, dimension)."""

    __tablename__ = "notification_reservations"
    __table_args__ = (
        Index("ix_notification_reservations_user_created", "user_id", "created_at"),
    )

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    channel: Mapped[str] = mapped_column(String(16), primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    dimension: Mapped[str] = mapped_column(String(255), primary_key=True)
    destination: Mapped[str] = mapped_column(String(320), nullable=False)
    severity: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="reserved")
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<NotificationReservation(user_id={self.user_id!r}, kind={self.kind!r}, "
            f"day={self.day!r}, state={self.state!r})>"
        )


# ---------------------------------------------------------------------------
# RunLockModel
# ---------------------------------------------------------------------------

class RunLockModel(Base):
    __tablename__ = "run_locks"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<RunLock(key={self.key!r}, holder={self.holder!r})>"


# ---------------------------------------------------------------------------
# UserContactModel
# ---------------------------------------------------------------------------

class UserContactModel(Base):
    """Delivery addresses and instant-message opt-in, owned by the product."""

    __tablename__ = "user_contacts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    instant_message_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    instant_message_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    instant_message_verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<UserContact(user_id={self.user_id!r})>"
