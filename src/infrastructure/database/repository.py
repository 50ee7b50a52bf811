"""
Repository implementations for the cost anomaly pipeline.

Each repository owns a :class:`sessionmaker` and runs every operation in its
own short transaction. Rows are read through Core ``select``/``RETURNING``
mappings and converted into the domain dataclasses by an explicit decode
step: a malformed row raises :class:`CorruptRecordError` on single reads and
is logged and skipped on list reads.

Conditional writes (reservation claims, run locks) are one
``INSERT ... ON CONFLICT DO UPDATE ... WHERE ... RETURNING`` statement, so
the database decides the race; a returned row means this call won.
PostgreSQL is the production dialect and SQLite is supported for tests.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, date, datetime
from typing import Any, TypeVar

from sqlalchemy import Table, and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from domain.exceptions import CorruptRecordError, PersistenceError
from domain.models.billing import (
    Anomaly,
    AnomalyDetection,
    AnomalySeverity,
    AnomalyStatus,
    CostPoint,
)
from domain.models.connection import Connection, ConnectionStatus
from domain.models.notification import (
    NotificationChannel,
    NotificationContact,
    NotificationKind,
    NotificationReservation,
    ReservationKey,
    ReservationState,
)
from domain.models.results import ConditionalUpdateResult
from domain.models.run_lock import RunLock

from .models import (
    AnomalyModel,
    ConnectionModel,
    CostPointModel,
    NotificationReservationModel,
    RunLockModel,
    UserContactModel,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DETECTION_FIELDS = (
    "observed",
    "baseline",
    "pct_change",
    "z_score",
    "severity",
    "message",
    "currency",
)


# =========================================================================
# Shared helpers
# =========================================================================

def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _required(value: datetime | None, column: str) -> datetime:
    aware = _aware(value)
    if aware is None:
        raise ValueError(f"{column} is null")
    return aware


def _insert(session: Session, table: Table) -> Any:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise PersistenceError("upsert", f"unsupported dialect {dialect!r}")


def decode_one(table: str, decoder: Callable[[Mapping[str, Any]], T], row: Mapping[str, Any]) -> T:
    try:
        return decoder(row)
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptRecordError(table, str(exc)) from exc


def decode_many(
    table: str, decoder: Callable[[Mapping[str, Any]], T], rows: Sequence[Mapping[str, Any]]
) -> list[T]:
    """Decode *rows*, quarantining (logging and skipping) malformed ones."""
    decoded: list[T] = []
    for row in rows:
        try:
            decoded.append(decoder(row))
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Skipping malformed %s row %s: %s", table, dict(row), exc)
    return decoded


# -- decoders ----------------------------------------------------------------

def decode_connection(row: Mapping[str, Any]) -> Connection:
    return Connection(
        user_id=str(row["user_id"]),
        access_key_id=str(row["access_key_id"]),
        secret_access_key_enc=str(row["secret_access_key_enc"]),
        region=str(row["region"]),
        status=ConnectionStatus(row["status"]),
        last_validated_at=_aware(row["last_validated_at"]),
        last_sync_at=_aware(row["last_sync_at"]),
        last_error=row["last_error"],
        created_at=_required(row["created_at"], "created_at"),
        updated_at=_required(row["updated_at"], "updated_at"),
    )


def decode_cost_point(row: Mapping[str, Any]) -> CostPoint:
    amount = float(row["amount"])
    if amount < 0:
        raise ValueError(f"negative amount {amount}")
    return CostPoint(
        user_id=str(row["user_id"]),
        day=row["day"],
        dimension=str(row["dimension"]),
        amount=amount,
        currency=str(row["currency"]),
        source=str(row["source"]),
        created_at=_required(row["created_at"], "created_at"),
        updated_at=_required(row["updated_at"], "updated_at"),
    )


def decode_anomaly(row: Mapping[str, Any]) -> Anomaly:
    z_score = row["z_score"]
    return Anomaly(
        id=row["id"] if isinstance(row["id"], uuid.UUID) else uuid.UUID(str(row["id"])),
        user_id=str(row["user_id"]),
        day=row["day"],
        dimension=str(row["dimension"]),
        observed=float(row["observed"]),
        baseline=float(row["baseline"]),
        pct_change=float(row["pct_change"]),
        z_score=float(z_score) if z_score is not None else None,
        severity=AnomalySeverity(row["severity"]),
        message=str(row["message"]),
        currency=str(row["currency"]),
        status=AnomalyStatus(row["status"]),
        insight=row["insight"],
        insight_status=row["insight_status"],
        created_at=_required(row["created_at"], "created_at"),
        updated_at=_required(row["updated_at"], "updated_at"),
    )


def decode_reservation(row: Mapping[str, Any]) -> NotificationReservation:
    return NotificationReservation(
        user_id=str(row["user_id"]),
        kind=NotificationKind(row["kind"]),
        channel=NotificationChannel(row["channel"]),
        day=row["day"],
        dimension=str(row["dimension"]),
        destination=str(row["destination"]),
        state=ReservationState(row["state"]),
        severity=row["severity"],
        claim_token=row["claim_token"],
        attempts=int(row["attempts"]),
        last_error=row["last_error"],
        sent_at=_aware(row["sent_at"]),
        created_at=_required(row["created_at"], "created_at"),
        updated_at=_required(row["updated_at"], "updated_at"),
    )


def decode_run_lock(row: Mapping[str, Any]) -> RunLock:
    return RunLock(
        key=str(row["key"]),
        holder=str(row["holder"]),
        expires_at=_required(row["expires_at"], "expires_at"),
        acquired_at=_required(row["acquired_at"], "acquired_at"),
        updated_at=_required(row["updated_at"], "updated_at"),
    )


def decode_contact(row: Mapping[str, Any]) -> NotificationContact:
    return NotificationContact(
        user_id=str(row["user_id"]),
        email=row["email"],
        instant_message_number=row["instant_message_number"],
        instant_message_enabled=bool(row["instant_message_enabled"]),
        instant_message_verified_at=_aware(row["instant_message_verified_at"]),
    )


class _SqlRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Storage operation %s failed: %s", operation, exc)
            raise PersistenceError(operation, str(exc)) from exc


# =========================================================================
# ConnectionRepository
# =========================================================================

class SqlConnectionRepository(_SqlRepository):
    """Operations on ``connections``."""

    _table: Table = ConnectionModel.__table__

    def get(self, user_id: str) -> Connection | None:
        with self._transaction("get connection") as session:
            row = (
                session.execute(select(self._table).where(self._table.c.user_id == user_id))
                .mappings()
                .first()
            )
        return decode_one("connections", decode_connection, row) if row else None

    def upsert(self, connection: Connection) -> Connection:
        t = self._table
        values = {
            "user_id": connection.user_id,
            "access_key_id": connection.access_key_id,
            "secret_access_key_enc": connection.secret_access_key_enc,
            "region": connection.region,
            "status": connection.status.value,
            "last_validated_at": connection.last_validated_at,
            "last_sync_at": connection.last_sync_at,
            "last_error": connection.last_error,
            "created_at": connection.created_at,
            "updated_at": connection.updated_at,
        }
        with self._transaction("upsert connection") as session:
            stmt = _insert(session, t).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[t.c.user_id],
                set_={k: v for k, v in values.items() if k not in ("user_id", "created_at")},
            ).returning(*t.c)
            row = session.execute(stmt).mappings().one()
        return decode_one("connections", decode_connection, row)

    def _update(self, operation: str, user_id: str, **values: Any) -> None:
        with self._transaction(operation) as session:
            session.execute(
                update(self._table).where(self._table.c.user_id == user_id).values(**values)
            )

    def mark_failed(self, user_id: str, error: str, now: datetime) -> None:
        self._update(
            "mark connection failed",
            user_id,
            status=ConnectionStatus.FAILED.value,
            last_error=error,
            updated_at=now,
        )

    def record_error(self, user_id: str, error: str, now: datetime) -> None:
        self._update("record connection error", user_id, last_error=error, updated_at=now)

    def mark_synced(self, user_id: str, now: datetime) -> None:
        self._update(
            "mark connection synced",
            user_id,
            status=ConnectionStatus.CONNECTED.value,
            last_sync_at=now,
            last_error=None,
            updated_at=now,
        )

    def list_due_for_sync(self, cutoff: datetime, limit: int) -> list[Connection]:
        t = self._table
        stmt = (
            select(t)
            .where(
                t.c.status == ConnectionStatus.CONNECTED.value,
                or_(t.c.last_sync_at.is_(None), t.c.last_sync_at < cutoff),
            )
            .order_by(t.c.last_sync_at.asc().nulls_first(), t.c.user_id)
            .limit(limit)
        )
        with self._transaction("list connections due") as session:
            rows = session.execute(stmt).mappings().all()
        return decode_many("connections", decode_connection, rows)

    def list_connected(self, limit: int) -> list[Connection]:
        t = self._table
        stmt = (
            select(t)
            .where(t.c.status == ConnectionStatus.CONNECTED.value)
            .order_by(t.c.user_id)
            .limit(limit)
        )
        with self._transaction("list connected") as session:
            rows = session.execute(stmt).mappings().all()
        return decode_many("connections", decode_connection, rows)


# =========================================================================
# CostPointRepository
# =========================================================================

class SqlCostPointRepository(_SqlRepository):
    """Idempotent spend storage on ``cost_points``.

    Writes are chunked, one transaction per chunk. A failing chunk is logged
    and the remaining chunks still run; the caller then receives a
    :class:`PersistenceError` carrying the number of rows written.
    """

    _table: Table = CostPointModel.__table__

    def __init__(self, session_factory: sessionmaker, chunk_size: int = 500) -> None:
        super().__init__(session_factory)
        self._chunk_size = max(1, chunk_size)

    def upsert_many(self, points: Sequence[CostPoint]) -> int:
        t = self._table
        # one row per key; a statement may not touch the same key twice
        unique: dict[tuple[str, date, str], CostPoint] = {}
        for point in points:
            unique[(point.user_id, point.day, point.dimension)] = point
        rows = [
            {
                "user_id": p.user_id,
                "day": p.day,
                "dimension": p.dimension,
                "amount": p.amount,
                "currency": p.currency,
                "source": p.source,
                "created_at": p.created_at,
                "updated_at": p.updated_at,
            }
            for p in unique.values()
        ]

        written = 0
        errors: list[str] = []
        for offset in range(0, len(rows), self._chunk_size):
            chunk = rows[offset : offset + self._chunk_size]
            try:
                with self._session_factory.begin() as session:
                    stmt = _insert(session, t).values(chunk)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[t.c.user_id, t.c.day, t.c.dimension],
                        set_={
                            "amount": stmt.excluded.amount,
                            "currency": stmt.excluded.currency,
                            "source": stmt.excluded.source,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                    session.execute(stmt)
                written += len(chunk)
            except SQLAlchemyError as exc:
                logger.error(
                    "Cost point chunk at offset %d (%d rows) failed: %s", offset, len(chunk), exc
                )
                errors.append(str(exc))

        if errors:
            raise PersistenceError(
                "upsert cost points",
                f"{len(errors)} chunk(s) failed: {errors[0]}",
                written=written,
            )
        return written

    def list_range(
        self,
        user_id: str,
        start: date,
        end_exclusive: date,
        dimension: str | None = None,
    ) -> list[CostPoint]:
        t = self._table
        stmt = select(t).where(t.c.user_id == user_id, t.c.day >= start, t.c.day < end_exclusive)
        if dimension is not None:
            stmt = stmt.where(t.c.dimension == dimension)
        stmt = stmt.order_by(t.c.day, t.c.dimension)
        with self._transaction("list cost points") as session:
            rows = session.execute(stmt).mappings().all()
        return decode_many("cost_points", decode_cost_point, rows)


# =========================================================================
# AnomalyRepository
# =========================================================================

class SqlAnomalyRepository(_SqlRepository):
    """Anomaly storage on ``anomalies``; re-scoring never touches lifecycle fields."""

    _table: Table = AnomalyModel.__table__

    def upsert_detections(
        self,
        user_id: str,
        detections: Sequence[AnomalyDetection],
        now: datetime,
    ) -> list[Anomaly]:
        t = self._table
        rows: list[Mapping[str, Any]] = []
        with self._transaction("upsert anomalies") as session:
            for detection in detections:
                stmt = _insert(session, t).values(
                    id=uuid.uuid4(),
                    user_id=user_id,
                    day=detection.day,
                    dimension=detection.dimension,
                    observed=detection.observed,
                    baseline=detection.baseline,
                    pct_change=detection.pct_change,
                    z_score=detection.z_score,
                    severity=detection.severity.value,
                    message=detection.message,
                    currency=detection.currency,
                    status=AnomalyStatus.OPEN.value,
                    created_at=now,
                    updated_at=now,
                )
                set_ = {name: stmt.excluded[name] for name in DETECTION_FIELDS}
                set_["updated_at"] = now
                stmt = stmt.on_conflict_do_update(
                    index_elements=[t.c.user_id, t.c.day, t.c.dimension], set_=set_
                ).returning(*t.c)
                rows.append(session.execute(stmt).mappings().one())
        return [decode_one("anomalies", decode_anomaly, row) for row in rows]

    def get(self, user_id: str, day: date, dimension: str) -> Anomaly | None:
        t = self._table
        stmt = select(t).where(t.c.user_id == user_id, t.c.day == day, t.c.dimension == dimension)
        with self._transaction("get anomaly") as session:
            row = session.execute(stmt).mappings().first()
        return decode_one("anomalies", decode_anomaly, row) if row else None

    def list_range(self, user_id: str, start: date, end_exclusive: date) -> list[Anomaly]:
        t = self._table
        stmt = (
            select(t)
            .where(t.c.user_id == user_id, t.c.day >= start, t.c.day < end_exclusive)
            .order_by(t.c.day, t.c.dimension)
        )
        with self._transaction("list anomalies") as session:
            rows = session.execute(stmt).mappings().all()
        return decode_many("anomalies", decode_anomaly, rows)

    def update_status(
        self, user_id: str, day: date, dimension: str, status: AnomalyStatus, now: datetime
    ) -> Anomaly | None:
        t = self._table
        stmt = (
            update(t)
            .where(t.c.user_id == user_id, t.c.day == day, t.c.dimension == dimension)
            .values(status=status.value, updated_at=now)
            .returning(*t.c)
        )
        with self._transaction("update anomaly status") as session:
            row = session.execute(stmt).mappings().first()
        return decode_one("anomalies", decode_anomaly, row) if row else None


# =========================================================================
# ReservationRepository
# =========================================================================

class SqlReservationRepository(_SqlRepository):
    """Atomic notification claims on ``notification_reservations``."""

    _table: Table = NotificationReservationModel.__table__

    def _key_clause(self, key: ReservationKey) -> Any:
        t = self._table
        return and_(
            t.c.user_id == key.user_id,
            t.c.kind == key.kind.value,
            t.c.channel == key.channel.value,
            t.c.day == key.day,
            t.c.dimension == key.dimension,
        )

    def reserve(
        self,
        key: ReservationKey,
        destination: str,
        severity: str | None,
        claim_token: str,
        now: datetime,
        stale_before: datetime,
    ) -> ConditionalUpdateResult[NotificationReservation]:
        """Claim *key* unless it is sent or freshly reserved by someone else."""
        t = self._table
        with self._transaction("reserve notification") as session:
            stmt = _insert(session, t).values(
                user_id=key.user_id,
                kind=key.kind.value,
                channel=key.channel.value,
                day=key.day,
                dimension=key.dimension,
                destination=destination,
                severity=severity,
                state=ReservationState.RESERVED.value,
                claim_token=claim_token,
                attempts=1,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[t.c.user_id, t.c.kind, t.c.channel, t.c.day, t.c.dimension],
                set_={
                    "state": ReservationState.RESERVED.value,
                    "claim_token": claim_token,
                    "destination": destination,
                    "severity": severity,
                    "attempts": t.c.attempts + 1,
                    "updated_at": now,
                },
                where=or_(
                    t.c.state == ReservationState.FAILED.value,
                    and_(
                        t.c.state == ReservationState.RESERVED.value,
                        t.c.updated_at <= stale_before,
                    ),
                ),
            ).returning(*t.c)
            row = session.execute(stmt).mappings().first()
        if row is None:
            return ConditionalUpdateResult.miss()
        return ConditionalUpdateResult.hit(decode_one("notification_reservations", decode_reservation, row))

    def finalize(
        self,
        key: ReservationKey,
        claim_token: str,
        state: ReservationState,
        now: datetime,
        error: str | None = None,
    ) -> ConditionalUpdateResult[NotificationReservation]:
        t = self._table
        values: dict[str, Any] = {"state": state.value, "last_error": error, "updated_at": now}
        if state == ReservationState.SENT:
            values["sent_at"] = now
        stmt = (
            update(t)
            .where(
                self._key_clause(key),
                t.c.claim_token == claim_token,
                t.c.state == ReservationState.RESERVED.value,
            )
            .values(**values)
            .returning(*t.c)
        )
        with self._transaction("finalize notification") as session:
            row = session.execute(stmt).mappings().first()
        if row is None:
            return ConditionalUpdateResult.miss()
        return ConditionalUpdateResult.hit(decode_one("notification_reservations", decode_reservation, row))

    def get(self, key: ReservationKey) -> NotificationReservation | None:
        with self._transaction("get reservation") as session:
            row = session.execute(select(self._table).where(self._key_clause(key))).mappings().first()
        return decode_one("notification_reservations", decode_reservation, row) if row else None

    def list_for_user(self, user_id: str) -> list[NotificationReservation]:
        t = self._table
        stmt = select(t).where(t.c.user_id == user_id).order_by(t.c.created_at)
        with self._transaction("list reservations") as session:
            rows = session.execute(stmt).mappings().all()
        return decode_many("notification_reservations", decode_reservation, rows)


# =========================================================================
# RunLockRepository
# =========================================================================

class SqlRunLockRepository(_SqlRepository):
    _table: Table = RunLockModel.__table__

    def try_acquire(
        self, key: str, owner: str, now: datetime, expires_at: datetime
    ) -> ConditionalUpdateResult[RunLock]:
        t = self._table
        with self._transaction("acquire run lock") as session:
            stmt = _insert(session, t).values(
                key=key, holder=owner, expires_at=expires_at, acquired_at=now, updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[t.c.key],
                set_={
                    "holder": owner,
                    "expires_at": expires_at,
                    "acquired_at": now,
                    "updated_at": now,
                },
                where=t.c.expires_at <= now,
            ).returning(*t.c)
            row = session.execute(stmt).mappings().first()
        if row is None:
            return ConditionalUpdateResult.miss()
        return ConditionalUpdateResult.hit(decode_one("run_locks", decode_run_lock, row))

    def release(self, key: str, owner: str, now: datetime) -> ConditionalUpdateResult[RunLock]:
        t = self._table
        stmt = (
            update(t)
            .where(t.c.key == key, t.c.holder == owner)
            .values(expires_at=now, updated_at=now)
            .returning(*t.c)
        )
        with self._transaction("release run lock") as session:
            row = session.execute(stmt).mappings().first()
        if row is None:
            return ConditionalUpdateResult.miss()
        return ConditionalUpdateResult.hit(decode_one("run_locks", decode_run_lock, row))

    def get(self, key: str) -> RunLock | None:
        with self._transaction("get run lock") as session:
            row = session.execute(select(self._table).where(self._table.c.key == key)).mappings().first()
        return decode_one("run_locks", decode_run_lock, row) if row else None


# =========================================================================
# ContactDirectory
# =========================================================================

class SqlContactDirectory(_SqlRepository):
    _table: Table = UserContactModel.__table__

    def get_contact(self, user_id: str) -> NotificationContact | None:
        t = self._table
        with self._transaction("get contact") as session:
            row = session.execute(select(t).where(t.c.user_id == user_id)).mappings().first()
        return decode_one("user_contacts", decode_contact, row) if row else None

    def save(self, contact: NotificationContact) -> NotificationContact:
        t = self._table
        values = {
            "user_id": contact.user_id,
            "email": contact.email,
            "instant_message_number": contact.instant_message_number,
            "instant_message_enabled": contact.instant_message_enabled,
            "instant_message_verified_at": contact.instant_message_verified_at,
        }
        with self._transaction("save contact") as session:
            stmt = _insert(session, t).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[t.c.user_id],
                set_={k: v for k, v in values.items() if k != "user_id"},
            ).returning(*t.c)
            row = session.execute(stmt).mappings().one()
        return decode_one("user_contacts", decode_contact, row)
