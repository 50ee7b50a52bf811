"""In-memory adapters implementing the application-layer storage ports.

Selected when no database URL is configured, and used by the unit tests.
Every store guards its state with a lock so the conditional writes
(reservation claims, run locks) keep their atomicity under threads, and
hands out copies so callers never mutate stored records.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import replace
from datetime import date, datetime

from domain.models.billing import Anomaly, AnomalyDetection, AnomalyStatus, CostPoint
from domain.models.connection import Connection, ConnectionStatus
from domain.models.notification import (
    NotificationContact,
    NotificationReservation,
    ReservationKey,
    ReservationState,
)
from domain.models.results import ConditionalUpdateResult
from domain.models.run_lock import RunLock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

class InMemoryConnectionRepository:
    """One billing connection per user."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[str, Connection] = {}

    def get(self, user_id: str) -> Connection | None:
        with self._lock:
            found = self._store.get(user_id)
            return replace(found) if found else None

    def upsert(self, connection: Connection) -> Connection:
        with self._lock:
            self._store[connection.user_id] = replace(connection)
            return replace(connection)

    def _update(self, user_id: str, **changes: object) -> None:
        with self._lock:
            found = self._store.get(user_id)
            if found is None:
                logger.warning("Connection update for unknown user %s ignored", user_id)
                return
            self._store[user_id] = replace(found, **changes)

    def mark_failed(self, user_id: str, error: str, now: datetime) -> None:
        self._update(user_id, status=ConnectionStatus.FAILED, last_error=error, updated_at=now)

    def record_error(self, user_id: str, error: str, now: datetime) -> None:
        self._update(user_id, last_error=error, updated_at=now)

    def mark_synced(self, user_id: str, now: datetime) -> None:
        self._update(
            user_id, status=ConnectionStatus.CONNECTED, last_sync_at=now, last_error=None, updated_at=now
        )

    def list_due_for_sync(self, cutoff: datetime, limit: int) -> list[Connection]:
        with self._lock:
            due = [
                replace(c)
                for c in self._store.values()
                if c.is_connected and (c.last_sync_at is None or c.last_sync_at < cutoff)
            ]
        due.sort(key=lambda c: (c.last_sync_at is not None, c.last_sync_at or cutoff, c.user_id))
        return due[:limit]

    def list_connected(self, limit: int) -> list[Connection]:
        with self._lock:
            connected = [replace(c) for c in self._store.values() if c.is_connected]
        connected.sort(key=lambda c: c.user_id)
        return connected[:limit]


# ---------------------------------------------------------------------------
# Cost points
# ---------------------------------------------------------------------------

class InMemoryCostPointRepository:
    """Spend keyed on (user_id, day, dimension); writes overwrite."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[tuple[str, date, str], CostPoint] = {}

    def upsert_many(self, points: Sequence[CostPoint]) -> int:
        with self._lock:
            for point in points:
                key = (point.user_id, point.day, point.dimension)
                existing = self._store.get(key)
                created_at = existing.created_at if existing else point.created_at
                self._store[key] = replace(point, created_at=created_at)
        return len(points)

    def list_range(
        self,
        user_id: str,
        start: date,
        end_exclusive: date,
        dimension: str | None = None,
    ) -> list[CostPoint]:
        with self._lock:
            rows = [
                replace(p)
                for (uid, day, dim), p in self._store.items()
                if uid == user_id
                and start <= day < end_exclusive
                and (dimension is None or dim == dimension)
            ]
        rows.sort(key=lambda p: (p.day, p.dimension))
        return rows

    def count(self, user_id: str | None = None) -> int:
        with self._lock:
            return sum(1 for (uid, _, _) in self._store if user_id is None or uid == user_id)


# ---------------------------------------------------------------------------
# Anomalies
# ---------------------------------------------------------------------------

class InMemoryAnomalyRepository:
    """Anomalies keyed on (user_id, day, dimension).

    Re-scoring overwrites detection fields only; status, insight and the
    creation time of an existing anomaly are kept.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[tuple[str, date, str], Anomaly] = {}

    def upsert_detections(
        self,
        user_id: str,
        detections: Sequence[AnomalyDetection],
        now: datetime,
    ) -> list[Anomaly]:
        stored: list[Anomaly] = []
        with self._lock:
            for detection in detections:
                key = (user_id, detection.day, detection.dimension)
                existing = self._store.get(key)
                if existing is None:
                    anomaly = Anomaly.from_detection(user_id, detection)
                    anomaly.created_at = now
                    anomaly.updated_at = now
                else:
                    anomaly = replace(
                        existing,
                        observed=detection.observed,
                        baseline=detection.baseline,
                        pct_change=detection.pct_change,
                        z_score=detection.z_score,
                        severity=detection.severity,
                        message=detection.message,
                        currency=detection.currency,
                        updated_at=now,
                    )
                self._store[key] = anomaly
                stored.append(replace(anomaly))
        return stored

    def get(self, user_id: str, day: date, dimension: str) -> Anomaly | None:
        with self._lock:
            found = self._store.get((user_id, day, dimension))
            return replace(found) if found else None

    def list_range(self, user_id: str, start: date, end_exclusive: date) -> list[Anomaly]:
        with self._lock:
            rows = [
                replace(a)
                for (uid, day, _), a in self._store.items()
                if uid == user_id and start <= day < end_exclusive
            ]
        rows.sort(key=lambda a: (a.day, a.dimension))
        return rows

    def update_status(
        self, user_id: str, day: date, dimension: str, status: AnomalyStatus, now: datetime
    ) -> Anomaly | None:
        with self._lock:
            key = (user_id, day, dimension)
            found = self._store.get(key)
            if found is None:
                return None
            self._store[key] = replace(found, status=status, updated_at=now)
            return replace(self._store[key])


# ---------------------------------------------------------------------------
# Notification reservations
# ---------------------------------------------------------------------------

class InMemoryReservationRepository:
    """Reservation claims with the same conditional semantics as the SQL store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[ReservationKey, NotificationReservation] = {}

    def reserve(
        self,
        key: ReservationKey,
        destination: str,
        severity: str | None,
        claim_token: str,
        now: datetime,
        stale_before: datetime,
    ) -> ConditionalUpdateResult[NotificationReservation]:
        with self._lock:
            existing = self._store.get(key)
            if existing is None:
                claimed = NotificationReservation(
                    user_id=key.user_id,
                    kind=key.kind,
                    channel=key.channel,
                    day=key.day,
                    dimension=key.dimension,
                    destination=destination,
                    state=ReservationState.RESERVED,
                    severity=severity,
                    claim_token=claim_token,
                    attempts=1,
                    created_at=now,
                    updated_at=now,
                )
            elif existing.state == ReservationState.FAILED or (
                existing.state == ReservationState.RESERVED and existing.updated_at <= stale_before
            ):
                claimed = replace(
                    existing,
                    state=ReservationState.RESERVED,
                    destination=destination,
                    severity=severity,
                    claim_token=claim_token,
                    attempts=existing.attempts + 1,
                    updated_at=now,
                )
            else:
                return ConditionalUpdateResult.miss()
            self._store[key] = claimed
            return ConditionalUpdateResult.hit(replace(claimed))

    def finalize(
        self,
        key: ReservationKey,
        claim_token: str,
        state: ReservationState,
        now: datetime,
        error: str | None = None,
    ) -> ConditionalUpdateResult[NotificationReservation]:
        with self._lock:
            existing = self._store.get(key)
            if (
                existing is None
                or existing.claim_token != claim_token
                or existing.state != ReservationState.RESERVED
            ):
                return ConditionalUpdateResult.miss()
            done = replace(
                existing,
                state=state,
                last_error=error,
                sent_at=now if state == ReservationState.SENT else existing.sent_at,
                updated_at=now,
            )
            self._store[key] = done
            return ConditionalUpdateResult.hit(replace(done))

    def get(self, key: ReservationKey) -> NotificationReservation | None:
        with self._lock:
            found = self._store.get(key)
            return replace(found) if found else None

    def list_for_user(self, user_id: str) -> list[NotificationReservation]:
        with self._lock:
            rows = [replace(r) for r in self._store.values() if r.user_id == user_id]
        rows.sort(key=lambda r: r.created_at)
        return rows


# ---------------------------------------------------------------------------
# Run locks
# ---------------------------------------------------------------------------

class InMemoryRunLockRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[str, RunLock] = {}

    def try_acquire(
        self, key: str, owner: str, now: datetime, expires_at: datetime
    ) -> ConditionalUpdateResult[RunLock]:
        with self._lock:
            existing = self._store.get(key)
            if existing is not None and existing.is_held(now):
                return ConditionalUpdateResult.miss()
            granted = RunLock(
                key=key, holder=owner, expires_at=expires_at, acquired_at=now, updated_at=now
            )
            self._store[key] = granted
            return ConditionalUpdateResult.hit(replace(granted))

    def release(self, key: str, owner: str, now: datetime) -> ConditionalUpdateResult[RunLock]:
        with self._lock:
            existing = self._store.get(key)
            if existing is None or existing.holder != owner:
                return ConditionalUpdateResult.miss()
            released = replace(existing, expires_at=now, updated_at=now)
            self._store[key] = released
            return ConditionalUpdateResult.hit(replace(released))

    def get(self, key: str) -> RunLock | None:
        with self._lock:
            found = self._store.get(key)
            return replace(found) if found else None


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

class InMemoryContactDirectory:
    """Delivery addresses, written by the product and read by the pipeline."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[str, NotificationContact] = {}

    def get_contact(self, user_id: str) -> NotificationContact | None:
        with self._lock:
            found = self._store.get(user_id)
            return replace(found) if found else None

    def save(self, contact: NotificationContact) -> NotificationContact:
        with self._lock:
            self._store[contact.user_id] = replace(contact)
            return replace(contact)
