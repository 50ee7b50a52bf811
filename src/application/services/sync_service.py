"""Cost sync application service.

One call pulls a user's daily spend for a bounded window, persists it
idempotently, scores it, persists anomalies, hands them to the notification
dispatcher and updates the Connection's health.

Failures before anything is written (steps 1-3) abort and come back as a
structured :class:`SyncResult`. Failures after cost rows are stored are
collected as warnings: nothing already written is rolled back.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol

from application.services.notification_service import DispatchReport
from domain.exceptions import (
    CredentialDecryptionError,
    InvalidSyncWindowError,
    PersistenceError,
    ProviderError,
)
from domain.models.billing import (
    DEFAULT_CURRENCY,
    SOURCE_AWS_COST_EXPLORER,
    Anomaly,
    AnomalyDetection,
    CostPoint,
    ProviderCostRow,
)
from domain.models.connection import Connection, ProviderCredentials
from domain.models.sync import MAX_WINDOW_DAYS, MIN_WINDOW_DAYS, SyncErrorCode
from domain.services.anomaly_engine import AnomalyEngine
from domain.services.series import FilledSeries, fill_series, top_dimensions
from infrastructure.observability.logging_config import log_context
from infrastructure.observability.metrics import (
    anomalies_detected_total,
    sync_duration_seconds,
    sync_runs_total,
)

logger = logging.getLogger(__name__)

DECRYPT_FAILURE_MESSAGE = "Stored AWS credentials could not be decrypted. Please reconnect AWS."
NOT_CONNECTED_MESSAGE = "AWS not connected. Connect AWS first."
DEFAULT_COOLDOWN = timedelta(minutes=2)
DEFAULT_TOP_DIMENSIONS = 12


# ---------------------------------------------------------------------------
# Value objects returned by service methods
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one per-user sync."""

    user_id: str
    ok: bool
    code: SyncErrorCode | None = None
    message: str = ""
    retry_after_seconds: int | None = None
    range_start: date | None = None
    range_end_exclusive: date | None = None
    days: int = 0
    stored_rows: int = 0
    stored_days: int = 0
    stored_dimensions: int = 0
    anomalies_total: int = 0
    anomalies_dimensions: int = 0
    dimensions_scanned: int = 0
    notifications: DispatchReport | None = None
    warnings: tuple[str, ...] = ()
    synced_at: datetime | None = None

    @property
    def anomalies_count(self) -> int:
        return self.anomalies_total + self.anomalies_dimensions

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "ok": self.ok,
            "code": self.code.value if self.code else None,
            "message": self.message,
            "retry_after_seconds": self.retry_after_seconds,
            "range": {
                "start": self.range_start.isoformat() if self.range_start else None,
                "end_exclusive": (
                    self.range_end_exclusive.isoformat() if self.range_end_exclusive else None
                ),
                "days": self.days,
            },
            "stored": {
                "rows": self.stored_rows,
                "days": self.stored_days,
                "dimensions": self.stored_dimensions,
            },
            "anomalies": {
                "total_count": self.anomalies_total,
                "dimension_count": self.anomalies_dimensions,
                "count": self.anomalies_count,
                "dimensions_scanned": self.dimensions_scanned,
            },
            "notifications": self.notifications.to_dict() if self.notifications else None,
            "warnings": list(self.warnings),
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }


@dataclass
class _Progress:
    """Mutable tally threaded through the sync steps."""

    start: date
    end_exclusive: date
    days: int
    stored_rows: int = 0
    stored_days: int = 0
    stored_dimensions: int = 0
    anomalies_total: int = 0
    anomalies_dimensions: int = 0
    dimensions_scanned: int = 0
    notifications: DispatchReport | None = None
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Repository / infrastructure port interfaces
# ---------------------------------------------------------------------------


class ConnectionRepository(Protocol):
    """Port: one billing Connection per user."""

    def get(self, user_id: str) -> Connection | None: ...

    def mark_failed(self, user_id: str, error: str, now: datetime) -> None: ...

    def record_error(self, user_id: str, error: str, now: datetime) -> None: ...

    def mark_synced(self, user_id: str, now: datetime) -> None: ...


class CostPointRepository(Protocol):
    """Port: idempotent (user, day, dimension) spend storage."""

    def upsert_many(self, points: Sequence[CostPoint]) -> int: ...


class AnomalyRepository(Protocol):
    """Port: anomaly storage that preserves lifecycle fields on update."""

    def upsert_detections(
        self,
        user_id: str,
        detections: Sequence[AnomalyDetection],
        now: datetime,
    ) -> list[Anomaly]: ...


class BillingProvider(Protocol):
    def fetch_daily_costs(
        self,
        credentials: ProviderCredentials,
        start: date,
        end_exclusive: date,
    ) -> list[ProviderCostRow]: ...


class CredentialDecrypter(Protocol):
    def decrypt(self, token: str) -> str: ...


class AlertDispatcher(Protocol):
    def dispatch(
        self, user_id: str, anomalies: Sequence[Anomaly], currency: str = DEFAULT_CURRENCY
    ) -> DispatchReport: ...


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class CostSyncService:
    """Runs the fetch, fill, persist, detect, persist, notify sequence for one user."""

    def __init__(
        self,
        connection_repo: ConnectionRepository,
        cost_repo: CostPointRepository,
        anomaly_repo: AnomalyRepository,
        provider: BillingProvider,
        cipher: CredentialDecrypter,
        dispatcher: AlertDispatcher,
        engine: AnomalyEngine | None = None,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        top_n: int = DEFAULT_TOP_DIMENSIONS,
        default_days: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._connection_repo = connection_repo
        self._cost_repo = cost_repo
        self._anomaly_repo = anomaly_repo
        self._provider = provider
        self._cipher = cipher
        self._dispatcher = dispatcher
        self._engine = engine or AnomalyEngine()
        self._cooldown = cooldown
        self._top_n = top_n
        self._default_days = default_days
        self._clock = clock or (lambda: datetime.now(UTC))

    # -- helpers ----------------------------------------------------------

    def _fail(
        self,
        user_id: str,
        code: SyncErrorCode,
        message: str,
        progress: _Progress | None = None,
        retry_after: int | None = None,
    ) -> SyncResult:
        sync_runs_total.labels(outcome=code.value).inc()
        logger.warning("Sync for user %s failed: %s (%s)", user_id, code.value, message)
        return SyncResult(
            user_id=user_id,
            ok=False,
            code=code,
            message=message,
            retry_after_seconds=retry_after,
            range_start=progress.start if progress else None,
            range_end_exclusive=progress.end_exclusive if progress else None,
            days=progress.days if progress else 0,
            stored_rows=progress.stored_rows if progress else 0,
            stored_days=progress.stored_days if progress else 0,
            stored_dimensions=progress.stored_dimensions if progress else 0,
        )

    def _note_connection_error(self, user_id: str, message: str, *, terminal: bool) -> None:
        now = self._clock()
        try:
            if terminal:
                self._connection_repo.mark_failed(user_id, message, now)
            else:
                self._connection_repo.record_error(user_id, message, now)
        except Exception:
            logger.exception("Recording connection error for user %s failed", user_id)

    def _cooldown_remaining(self, connection: Connection, now: datetime) -> int | None:
        if connection.last_sync_at is None:
            return None
        elapsed = now - connection.last_sync_at
        if elapsed >= self._cooldown:
            return None
        return max(1, math.ceil((self._cooldown - elapsed).total_seconds()))

    def _persist_costs(self, user_id: str, series: FilledSeries, progress: _Progress) -> None:
        now = self._clock()
        points = [
            CostPoint(
                user_id=user_id,
                day=point.day,
                dimension=dimension,
                amount=point.amount,
                currency=point.currency,
                source=SOURCE_AWS_COST_EXPLORER,
                created_at=now,
                updated_at=now,
            )
            for dimension, point in series.cells()
        ]
        progress.stored_rows = self._cost_repo.upsert_many(points)
        progress.stored_days = len(series.axis)
        progress.stored_dimensions = len(series.by_dimension)

    def _detect(self, series: FilledSeries, progress: _Progress) -> list[AnomalyDetection]:
        scanned = top_dimensions(series.by_dimension, self._top_n)
        progress.dimensions_scanned = len(scanned)
        total = self._engine.detect_series(series.total, currency=series.currency)
        per_dimension = self._engine.detect_dimensions(
            series.by_dimension, scanned, currency=series.currency
        )
        progress.anomalies_total = len(total)
        progress.anomalies_dimensions = len(per_dimension)
        for scope, found in (("total", total), ("dimension", per_dimension)):
            for detection in found:
                anomalies_detected_total.labels(severity=detection.severity.value, scope=scope).inc()
        return [*total, *per_dimension]

    # -- public API -------------------------------------------------------

    def sync(self, user_id: str, window_days: int | None = None) -> SyncResult:
        """Sync *user_id* over the last *window_days* complete UTC days."""
        days = self._default_days if window_days is None else window_days
        if not MIN_WINDOW_DAYS <= days <= MAX_WINDOW_DAYS:
            raise InvalidSyncWindowError(days, MIN_WINDOW_DAYS, MAX_WINDOW_DAYS)

        started = time.perf_counter()
        with log_context(user_id=user_id, sync_days=days):
            try:
                return self._run(user_id, days)
            finally:
                sync_duration_seconds.observe(time.perf_counter() - started)

    def _run(self, user_id: str, days: int) -> SyncResult:
        now = self._clock()

        # 1. connection + cooldown
        connection = self._connection_repo.get(user_id)
        if connection is None or not connection.is_connected:
            return self._fail(user_id, SyncErrorCode.NOT_CONNECTED, NOT_CONNECTED_MESSAGE)

        remaining = self._cooldown_remaining(connection, now)
        if remaining is not None:
            return self._fail(
                user_id,
                SyncErrorCode.COOLDOWN,
                f"Please wait {remaining}s before syncing again.",
                retry_after=remaining,
            )

        # 2. credentials
        try:
            secret = self._cipher.decrypt(connection.secret_access_key_enc)
        except CredentialDecryptionError as exc:
            logger.warning("Credential decryption failed for user %s: %s", user_id, exc.reason)
            self._note_connection_error(user_id, DECRYPT_FAILURE_MESSAGE, terminal=True)
            return self._fail(user_id, SyncErrorCode.INVALID_CREDENTIALS, DECRYPT_FAILURE_MESSAGE)
        credentials = ProviderCredentials(connection.access_key_id, secret, connection.region)

        # 3. fetch [today - days, today)
        today = now.astimezone(UTC).date()
        progress = _Progress(start=today - timedelta(days=days), end_exclusive=today, days=days)
        try:
            rows = self._provider.fetch_daily_costs(credentials, progress.start, today)
        except ProviderError as exc:
            self._note_connection_error(user_id, exc.detail, terminal=exc.code.breaks_connection)
            return self._fail(user_id, exc.code, exc.detail, progress, retry_after=exc.retry_after)
        except Exception:
            logger.exception("Unexpected billing provider failure for user %s", user_id)
            error = ProviderError(SyncErrorCode.PROVIDER_ERROR)
            self._note_connection_error(user_id, error.detail, terminal=False)
            return self._fail(user_id, error.code, error.detail, progress)

        # 4-5. fill gaps, persist cost points
        series = fill_series(rows, progress.start, today)
        try:
            self._persist_costs(user_id, series, progress)
        except PersistenceError as exc:
            progress.stored_rows = exc.written
            message = "Failed to store cost data. Please try again."
            self._note_connection_error(user_id, message, terminal=False)
            return self._fail(user_id, SyncErrorCode.STORAGE_ERROR, message, progress)

        # 6-8. detect, persist, notify; errors from here on are collected
        stored: list[Anomaly] | None = None
        try:
            detections = self._detect(series, progress)
            stored = self._anomaly_repo.upsert_detections(user_id, detections, self._clock())
        except Exception as exc:
            logger.exception("Anomaly detection/persistence failed for user %s", user_id)
            progress.warnings.append(f"anomalies: {exc}")

        if stored is not None:
            try:
                progress.notifications = self._dispatcher.dispatch(user_id, stored, series.currency)
            except Exception as exc:
                logger.exception("Notification dispatch failed for user %s", user_id)
                progress.warnings.append(f"notifications: {exc}")

        # 9. connection health
        synced_at: datetime | None = None
        if not progress.warnings:
            try:
                synced_at = self._clock()
                self._connection_repo.mark_synced(user_id, synced_at)
            except Exception as exc:
                logger.exception("Marking user %s synced failed", user_id)
                synced_at = None
                progress.warnings.append(f"connection: {exc}")
        else:
            self._note_connection_error(
                user_id, "Sync partially failed: " + "; ".join(progress.warnings), terminal=False
            )

        ok = not progress.warnings
        code = None if ok else SyncErrorCode.PARTIAL_FAILURE
        sync_runs_total.labels(outcome="ok" if ok else code.value).inc()  # type: ignore[union-attr]
        logger.info(
            "Sync for user %s stored %d rows, %d anomalies, warnings=%d",
            user_id,
            progress.stored_rows,
            progress.anomalies_total + progress.anomalies_dimensions,
            len(progress.warnings),
        )
        return SyncResult(
            user_id=user_id,
            ok=ok,
            code=code,
            message=f"Synced {days} days." if ok else "Sync completed with errors.",
            range_start=progress.start,
            range_end_exclusive=progress.end_exclusive,
            days=days,
            stored_rows=progress.stored_rows,
            stored_days=progress.stored_days,
            stored_dimensions=progress.stored_dimensions,
            anomalies_total=progress.anomalies_total,
            anomalies_dimensions=progress.anomalies_dimensions,
            dimensions_scanned=progress.dimensions_scanned,
            notifications=progress.notifications,
            warnings=tuple(progress.warnings),
            synced_at=synced_at,
        )
