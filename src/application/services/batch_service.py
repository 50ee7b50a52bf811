"""Scheduled multi-user batch jobs.

Each job runs under its named run lock, selects eligible users, and fans the
per-user work out over a bounded thread pool. One user's failure never stops
the others: errors are collected into the run report, never raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol, TypeVar

from application.services.report_service import WeeklyReportOutcome
from application.services.run_lock_service import (
    AUTO_SYNC_LOCK,
    WEEKLY_REPORT_LOCK,
    RunLockService,
    new_owner_id,
)
from application.services.sync_service import SyncResult
from domain.models.connection import Connection
from infrastructure.observability.logging_config import log_context
from infrastructure.observability.metrics import batch_users_total

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_REPORTED_FAILURES = 25
MIN_CONCURRENCY, MAX_CONCURRENCY = 1, 8


def clamp(value: int | None, low: int, high: int, default: int) -> int:
    if value is None:
        return default
    return max(low, min(high, int(value)))


# ---------------------------------------------------------------------------
# Value objects returned by service methods
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AutoSyncConfig:
    days: int = 30
    max_users: int = 200
    min_hours_since_last_sync: int = 6
    concurrency: int = 3

    @classmethod
    def clamped(
        cls,
        days: int | None = None,
        max_users: int | None = None,
        min_hours_since_last_sync: int | None = None,
        concurrency: int | None = None,
        defaults: AutoSyncConfig | None = None,
    ) -> AutoSyncConfig:
        base = defaults or cls()
        return cls(
            days=clamp(days, 7, 90, base.days),
            max_users=clamp(max_users, 1, 2000, base.max_users),
            min_hours_since_last_sync=clamp(
                min_hours_since_last_sync, 1, 72, base.min_hours_since_last_sync
            ),
            concurrency=clamp(concurrency, MIN_CONCURRENCY, MAX_CONCURRENCY, base.concurrency),
        )


@dataclass(frozen=True)
class WeeklyReportConfig:
    max_users: int = 300
    concurrency: int = 3
    week_start: date | None = None

    @classmethod
    def clamped(
        cls,
        max_users: int | None = None,
        concurrency: int | None = None,
        week_start: date | None = None,
        defaults: WeeklyReportConfig | None = None,
    ) -> WeeklyReportConfig:
        base = defaults or cls()
        return cls(
            max_users=clamp(max_users, 1, 5000, base.max_users),
            concurrency=clamp(concurrency, MIN_CONCURRENCY, MAX_CONCURRENCY, base.concurrency),
            week_start=week_start,
        )


@dataclass
class BatchRunReport:
    job: str
    run_id: str
    started_at: datetime
    config: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False
    reason: str | None = None
    ended_at: datetime | None = None
    scanned: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped_users: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def add_failure(self, user_id: str, code: str, message: str) -> None:
        self.failed += 1
        if len(self.failures) < MAX_REPORTED_FAILURES:
            self.failures.append({"user_id": user_id, "code": code, "message": message})

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "run_id": self.run_id,
            "skipped": self.skipped,
            "reason": self.reason,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "config": self.config,
            "scanned": self.scanned,
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "skipped_users": self.skipped_users,
            "failures": list(self.failures),
        }


# ---------------------------------------------------------------------------
# Repository / infrastructure port interfaces
# ---------------------------------------------------------------------------


class ConnectionSelector(Protocol):
    def list_due_for_sync(self, cutoff: datetime, limit: int) -> list[Connection]: ...

    def list_connected(self, limit: int) -> list[Connection]: ...


class UserSyncer(Protocol):
    def sync(self, user_id: str, window_days: int | None = None) -> SyncResult: ...


class ReportSender(Protocol):
    def send(self, user_id: str, week_start: date | None = None) -> WeeklyReportOutcome: ...


def run_pool(
    user_ids: Sequence[str],
    worker: Callable[[str], T],
    concurrency: int,
) -> list[tuple[str, T | None, BaseException | None]]:
    """Run *worker* per user on at most *concurrency* threads.

    Returns ``(user_id, result, error)`` for every user; exactly one of
    ``result`` and ``error`` is set.
    """
    outcomes: list[tuple[str, T | None, BaseException | None]] = []
    if not user_ids:
        return outcomes
    workers = clamp(concurrency, MIN_CONCURRENCY, MAX_CONCURRENCY, MIN_CONCURRENCY)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch") as pool:
        futures = {pool.submit(worker, user_id): user_id for user_id in user_ids}
        for future in as_completed(futures):
            user_id = futures[future]
            try:
                outcomes.append((user_id, future.result(), None))
            except Exception as exc:
                outcomes.append((user_id, None, exc))
    return outcomes


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BatchJobService:
    """Auto-sync and weekly-report fan-out under run locks."""

    def __init__(
        self,
        connection_repo: ConnectionSelector,
        sync_service: UserSyncer,
        report_service: ReportSender,
        lock_service: RunLockService,
        auto_sync_ttl: timedelta = timedelta(minutes=15),
        weekly_report_ttl: timedelta = timedelta(minutes=20),
        auto_sync_defaults: AutoSyncConfig | None = None,
        weekly_report_defaults: WeeklyReportConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._connection_repo = connection_repo
        self._sync_service = sync_service
        self._report_service = report_service
        self._lock_service = lock_service
        self._auto_sync_ttl = auto_sync_ttl
        self._weekly_report_ttl = weekly_report_ttl
        self._auto_sync_defaults = auto_sync_defaults or AutoSyncConfig()
        self._weekly_report_defaults = weekly_report_defaults or WeeklyReportConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    # -- auto sync --------------------------------------------------------

    def run_auto_sync(
        self,
        days: int | None = None,
        max_users: int | None = None,
        min_hours_since_last_sync: int | None = None,
        concurrency: int | None = None,
    ) -> BatchRunReport:
        """Sync every connected user not synced within the threshold."""
        config = AutoSyncConfig.clamped(
            days, max_users, min_hours_since_last_sync, concurrency, self._auto_sync_defaults
        )
        run_id = new_owner_id()
        report = BatchRunReport(
            job=AUTO_SYNC_LOCK,
            run_id=run_id,
            started_at=self._clock(),
            config={
                "days": config.days,
                "max_users": config.max_users,
                "min_hours_since_last_sync": config.min_hours_since_last_sync,
                "concurrency": config.concurrency,
            },
        )

        with log_context(job=AUTO_SYNC_LOCK, run_id=run_id):
            with self._lock_service.hold(AUTO_SYNC_LOCK, self._auto_sync_ttl, run_id) as holder:
                if holder is None:
                    report.skipped = True
                    report.reason = "locked"
                    report.ended_at = self._clock()
                    return report

                cutoff = self._clock() - timedelta(hours=config.min_hours_since_last_sync)
                due = self._connection_repo.list_due_for_sync(cutoff, config.max_users)
                report.scanned = len(due)

                def work(user_id: str) -> SyncResult:
                    with log_context(job=AUTO_SYNC_LOCK, run_id=run_id):
                        return self._sync_service.sync(user_id, config.days)

                for user_id, result, error in run_pool(
                    [c.user_id for c in due], work, config.concurrency
                ):
                    report.processed += 1
                    if error is not None:
                        logger.error("Auto-sync for user %s raised: %s", user_id, error)
                        report.add_failure(user_id, "EXCEPTION", str(error))
                        batch_users_total.labels(job=AUTO_SYNC_LOCK, outcome="error").inc()
                    elif result is not None and result.ok:
                        report.success += 1
                        batch_users_total.labels(job=AUTO_SYNC_LOCK, outcome="success").inc()
                    elif result is not None:
                        code = result.code.value if result.code else "UNKNOWN"
                        report.add_failure(user_id, code, result.message)
                        batch_users_total.labels(job=AUTO_SYNC_LOCK, outcome="failed").inc()

                report.ended_at = self._clock()

        logger.info(
            "Auto-sync run %s: scanned=%d success=%d failed=%d",
            run_id,
            report.scanned,
            report.success,
            report.failed,
        )
        return report

    # -- weekly report ----------------------------------------------------

    def run_weekly_reports(
        self,
        max_users: int | None = None,
        concurrency: int | None = None,
        week_start: date | None = None,
    ) -> BatchRunReport:
        """Send the weekly spend report to every connected user."""
        config = WeeklyReportConfig.clamped(
            max_users, concurrency, week_start, self._weekly_report_defaults
        )
        run_id = new_owner_id()
        report = BatchRunReport(
            job=WEEKLY_REPORT_LOCK,
            run_id=run_id,
            started_at=self._clock(),
            config={
                "max_users": config.max_users,
                "concurrency": config.concurrency,
                "week_start": config.week_start.isoformat() if config.week_start else None,
            },
        )

        with log_context(job=WEEKLY_REPORT_LOCK, run_id=run_id):
            with self._lock_service.hold(
                WEEKLY_REPORT_LOCK, self._weekly_report_ttl, run_id
            ) as holder:
                if holder is None:
                    report.skipped = True
                    report.reason = "locked"
                    report.ended_at = self._clock()
                    return report

                users = self._connection_repo.list_connected(config.max_users)
                report.scanned = len(users)

                def work(user_id: str) -> WeeklyReportOutcome:
                    with log_context(job=WEEKLY_REPORT_LOCK, run_id=run_id):
                        return self._report_service.send(user_id, config.week_start)

                for user_id, outcome, error in run_pool(
                    [c.user_id for c in users], work, config.concurrency
                ):
                    report.processed += 1
                    if error is not None:
                        logger.error("Weekly report for user %s raised: %s", user_id, error)
                        report.add_failure(user_id, "EXCEPTION", str(error))
                        batch_users_total.labels(job=WEEKLY_REPORT_LOCK, outcome="error").inc()
                    elif outcome is not None and outcome.status == "sent":
                        report.success += 1
                        batch_users_total.labels(job=WEEKLY_REPORT_LOCK, outcome="success").inc()
                    elif outcome is not None and outcome.status == "skipped":
                        report.skipped_users += 1
                        batch_users_total.labels(job=WEEKLY_REPORT_LOCK, outcome="skipped").inc()
                    elif outcome is not None:
                        report.add_failure(user_id, "SEND_FAILED", outcome.error or "send failed")
                        batch_users_total.labels(job=WEEKLY_REPORT_LOCK, outcome="failed").inc()

                report.ended_at = self._clock()

        logger.info(
            "Weekly report run %s: scanned=%d sent=%d skipped=%d failed=%d",
            run_id,
            report.scanned,
            report.success,
            report.skipped_users,
            report.failed,
        )
        return report
