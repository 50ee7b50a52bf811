"""Integration tests for the SQL repositories on PostgreSQL.

The concurrency cases hammer one key from many threads, each with its own
pooled connection, and check the database lets exactly one claim through.
"""

from __future__ import annotations

import threading
from datetime import UTC, date, datetime, timedelta

import pytest

from application.services.notification_service import NotificationDispatcher
from application.services.run_lock_service import RunLockService
from domain.models.billing import TOTAL_DIMENSION, Anomaly, AnomalyDetection, AnomalySeverity, AnomalyStatus, CostPoint
from domain.models.notification import (
    NotificationChannel,
    NotificationContact,
    NotificationKind,
    ReservationKey,
    ReservationState,
    SendOutcome,
    SendStatus,
)
from infrastructure.database.migration_runner import MigrationRunner
from infrastructure.database.repository import (
    SqlAnomalyRepository,
    SqlContactDirectory,
    SqlCostPointRepository,
    SqlReservationRepository,
    SqlRunLockRepository,
)

NOW = datetime(2026, 2, 17, 12, 0, 0, tzinfo=UTC)
DAY = date(2026, 2, 16)
THREADS = 16


def run_concurrently(n: int, target) -> list:
    barrier = threading.Barrier(n)
    results: list = [None] * n

    def worker(i: int) -> None:
        barrier.wait()
        results[i] = target(i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


@pytest.mark.integration
class TestMigrations:

    def test_database_is_at_head(self, migrated_engine):
        status = MigrationRunner(migrated_engine).status()
        assert status.is_up_to_date
        assert status.current_revision == "001"


@pytest.mark.integration
class TestCostPoints:

    def test_upsert_is_idempotent(self, session_factory):
        repo = SqlCostPointRepository(session_factory, chunk_size=7)
        points = [CostPoint("u1", DAY - timedelta(days=i), TOTAL_DIMENSION, float(i)) for i in range(30)]
        repo.upsert_many(points)
        repo.upsert_many(points)
        stored = repo.list_range("u1", DAY - timedelta(days=40), DAY + timedelta(days=1))
        assert len(stored) == 30
        assert stored[-1].day == DAY


@pytest.mark.integration
class TestAnomalies:

    def test_rescore_keeps_acknowledged_status(self, session_factory):
        repo = SqlAnomalyRepository(session_factory)
        detection = AnomalyDetection(DAY, TOTAL_DIMENSION, 25.0, 10.0, 1.5, None, AnomalySeverity.CRITICAL, "jump")
        (first,) = repo.upsert_detections("u1", [detection], NOW)
        repo.update_status("u1", DAY, TOTAL_DIMENSION, AnomalyStatus.ACKNOWLEDGED, NOW)
        (again,) = repo.upsert_detections("u1", [detection], NOW + timedelta(hours=2))
        assert again.id == first.id
        assert again.status == AnomalyStatus.ACKNOWLEDGED


@pytest.mark.integration
class TestReservationRace:

    def test_exactly_one_claim_wins(self, session_factory):
        repo = SqlReservationRepository(session_factory)
        key = ReservationKey("u1", NotificationKind.ANOMALY_EMAIL, NotificationChannel.EMAIL, DAY, TOTAL_DIMENSION)

        results = run_concurrently(
            THREADS,
            lambda i: repo.reserve(key, "a@example.com", "critical", f"token-{i}", NOW, NOW - timedelta(minutes=15)),
        )

        winners = [r for r in results if r.matched]
        assert len(winners) == 1
        stored = repo.get(key)
        assert stored.claim_token == winners[0].document.claim_token
        assert stored.attempts == 1

    def test_dispatchers_send_once(self, session_factory):
        reservations = SqlReservationRepository(session_factory)
        contacts = SqlContactDirectory(session_factory)
        contacts.save(NotificationContact("u1", email="founder@example.com"))
        sent: list[str] = []
        lock = threading.Lock()

        class Email:
            def send_email(self, to, subject, text, html):
                with lock:
                    sent.append(to)
                return SendOutcome(SendStatus.OK)

        class Silent:
            def send_message(self, to, text):
                return SendOutcome(SendStatus.DISABLED)

        anomaly = Anomaly(
            user_id="u1",
            day=DAY,
            dimension=TOTAL_DIMENSION,
            observed=25.0,
            baseline=10.0,
            pct_change=1.5,
            severity=AnomalySeverity.CRITICAL,
            message="jump",
        )

        def dispatch(i: int):
            dispatcher = NotificationDispatcher(
                reservation_repo=reservations,
                contacts=contacts,
                email_channel=Email(),
                instant_message_channel=Silent(),
                base_url="https://app.example.com",
                clock=lambda: NOW,
            )
            return dispatcher.dispatch("u1", [anomaly])

        run_concurrently(THREADS, dispatch)

        assert sent == ["founder@example.com"]
        (reservation,) = reservations.list_for_user("u1")
        assert reservation.state == ReservationState.SENT


@pytest.mark.integration
class TestRunLockRace:

    def test_exactly_one_holder(self, session_factory):
        service = RunLockService(SqlRunLockRepository(session_factory), clock=lambda: NOW)
        results = run_concurrently(
            THREADS, lambda i: service.acquire("aws_auto_sync", timedelta(minutes=15), f"worker-{i}")
        )
        assert results.count(True) == 1
