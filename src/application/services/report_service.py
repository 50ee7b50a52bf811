"""Weekly spend report application service.

Builds a seven-day summary from stored cost points and anomalies and emails
it once per user and week, reusing the notification reservation protocol
(kind ``weekly_report`` keyed by the week's first day).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol

from application.services.message_rendering import render_weekly_report_email
from application.services.notification_service import (
    ContactDirectory,
    DeliveryOutcome,
    EmailSender,
    NotificationDispatcher,
    resolve_email,
)
from domain.models.billing import (
    DEFAULT_CURRENCY,
    TOTAL_DIMENSION,
    Anomaly,
    AnomalySeverity,
    AnomalyStatus,
    CostPoint,
)
from domain.models.notification import NotificationChannel, NotificationKind, ReservationKey
from domain.services.series import date_axis

logger = logging.getLogger(__name__)

REPORT_DAYS = 7
TOP_DIMENSIONS = 6
MAX_ANOMALIES = 10


# ---------------------------------------------------------------------------
# Value objects returned by service methods
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WeeklyReport:
    user_id: str
    start: date
    end_exclusive: date
    currency: str
    last7: float
    prev7: float
    daily: tuple[tuple[date, float], ...]
    top_dimensions: tuple[tuple[str, float], ...]
    anomalies: tuple[Anomaly, ...]

    @property
    def end(self) -> date:
        """Last day covered, inclusive."""
        return self.end_exclusive - timedelta(days=1)

    @property
    def delta(self) -> float:
        return self.last7 - self.prev7

    @property
    def delta_pct(self) -> float | None:
        return self.delta / self.prev7 if self.prev7 > 0 else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "range": {"start": self.start.isoformat(), "end": self.end.isoformat()},
            "currency": self.currency,
            "total": {
                "last7": self.last7,
                "prev7": self.prev7,
                "delta": self.delta,
                "delta_pct": self.delta_pct,
                "daily": [{"date": d.isoformat(), "amount": a} for d, a in self.daily],
            },
            "top_dimensions": [{"dimension": n, "amount": a} for n, a in self.top_dimensions],
            "anomalies": [
                {
                    "date": a.day.isoformat(),
                    "dimension": a.dimension,
                    "severity": a.severity.value,
                    "message": a.message,
                }
                for a in self.anomalies
            ],
        }


@dataclass(frozen=True)
class WeeklyReportOutcome:
    user_id: str
    week_start: date
    status: str
    reason: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != DeliveryOutcome.FAILED.value


def default_week(today: date) -> date:
    """First day of the last seven complete days before *today*."""
    return today - timedelta(days=REPORT_DAYS)


# ---------------------------------------------------------------------------
# Repository / infrastructure port interfaces
# ---------------------------------------------------------------------------


class CostPointReader(Protocol):
    def list_range(
        self,
        user_id: str,
        start: date,
        end_exclusive: date,
        dimension: str | None = None,
    ) -> list[CostPoint]: ...


class AnomalyReader(Protocol):
    def list_range(self, user_id: str, start: date, end_exclusive: date) -> list[Anomaly]: ...


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class WeeklyReportService:
    def __init__(
        self,
        cost_repo: CostPointReader,
        anomaly_repo: AnomalyReader,
        contacts: ContactDirectory,
        dispatcher: NotificationDispatcher,
        email_channel: EmailSender,
        base_url: str = "http://localhost:3000",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cost_repo = cost_repo
        self._anomaly_repo = anomaly_repo
        self._contacts = contacts
        self._dispatcher = dispatcher
        self._email = email_channel
        self._base_url = base_url
        self._clock = clock or (lambda: datetime.now(UTC))

    def build(self, user_id: str, week_start: date | None = None) -> WeeklyReport | None:
        """Summarise seven days from *week_start*; ``None`` when there is nothing to say."""
        start = week_start or default_week(self._clock().astimezone(UTC).date())
        end_exclusive = start + timedelta(days=REPORT_DAYS)
        prev_start = start - timedelta(days=REPORT_DAYS)

        totals = self._cost_repo.list_range(user_id, prev_start, end_exclusive, TOTAL_DIMENSION)
        by_day = {p.day: p.amount for p in totals}
        currency = next((p.currency for p in totals if p.currency), DEFAULT_CURRENCY)

        days = date_axis(start, end_exclusive)
        daily = tuple((d, by_day.get(d, 0.0)) for d in days)
        last7 = sum(a for _, a in daily)
        prev7 = sum(by_day.get(d, 0.0) for d in date_axis(prev_start, start))

        spend: dict[str, float] = {}
        for point in self._cost_repo.list_range(user_id, start, end_exclusive):
            if point.dimension == TOTAL_DIMENSION:
                continue
            spend[point.dimension] = spend.get(point.dimension, 0.0) + point.amount
        top = tuple(
            sorted(((n, a) for n, a in spend.items() if a > 0), key=lambda t: (-t[1], t[0]))[
                :TOP_DIMENSIONS
            ]
        )

        notable = [
            a
            for a in self._anomaly_repo.list_range(user_id, start, end_exclusive)
            if a.severity.at_least(AnomalySeverity.WARNING) and a.status != AnomalyStatus.RESOLVED
        ]
        notable.sort(key=lambda a: (a.day, a.dimension), reverse=True)

        if last7 <= 0 and not top and not notable:
            return None

        return WeeklyReport(
            user_id=user_id,
            start=start,
            end_exclusive=end_exclusive,
            currency=currency,
            last7=last7,
            prev7=prev7,
            daily=daily,
            top_dimensions=top,
            anomalies=tuple(notable[:MAX_ANOMALIES]),
        )

    def send(self, user_id: str, week_start: date | None = None) -> WeeklyReportOutcome:
        start = week_start or default_week(self._clock().astimezone(UTC).date())

        destination, reason = resolve_email(self._contacts.get_contact(user_id))
        if destination is None:
            return WeeklyReportOutcome(user_id, start, DeliveryOutcome.SKIPPED.value, reason=reason)

        report = self.build(user_id, start)
        if report is None:
            return WeeklyReportOutcome(user_id, start, DeliveryOutcome.SKIPPED.value, reason="no_data")

        subject, text, body = render_weekly_report_email(report, self._base_url)
        key = ReservationKey(
            user_id=user_id,
            kind=NotificationKind.WEEKLY_REPORT,
            channel=NotificationChannel.EMAIL,
            day=start,
            dimension=TOTAL_DIMENSION,
        )
        outcome, error = self._dispatcher.deliver_once(
            key, destination, None, lambda: self._email.send_email(destination, subject, text, body)
        )
        reason = "already_sent_or_locked" if outcome is DeliveryOutcome.SKIPPED else None
        logger.info("Weekly report for user %s (%s): %s", user_id, start, outcome.value)
        return WeeklyReportOutcome(user_id, start, outcome.value, reason=reason, error=error)
