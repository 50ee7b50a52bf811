"""Notification dispatch application service.

Delivers at most one alert per (user, incident, channel) using a
reservation record that is claimed with an atomic conditional upsert before
any send happens. A claim succeeds only when no reservation exists, the
previous attempt ended ``failed``, or a ``reserved`` claim has gone stale.
Each claim carries a fresh token; the terminal write is conditional on that
token so a worker whose claim was taken over cannot overwrite the newer one.

Dispatch is best-effort: nothing here raises into the calling sync.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from application.services.message_rendering import (
    render_anomaly_email,
    render_anomaly_instant_message,
)
from domain.models.billing import DEFAULT_CURRENCY, Anomaly, AnomalySeverity, AnomalyStatus
from domain.models.notification import (
    NotificationChannel,
    NotificationContact,
    NotificationKind,
    NotificationReservation,
    ReservationKey,
    ReservationState,
    SendOutcome,
    SendStatus,
)
from domain.models.results import ConditionalUpdateResult
from infrastructure.observability.metrics import notifications_total

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=15)


# ---------------------------------------------------------------------------
# Value objects returned by service methods
# ---------------------------------------------------------------------------


class DeliveryOutcome(enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ChannelSummary:
    """Per-channel tally for one dispatch call."""

    channel: str
    kind: str
    attempted: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    skipped_reason: str | None = None
    errors: list[str] = field(default_factory=list)

    def record(self, outcome: DeliveryOutcome, error: str | None = None) -> None:
        if outcome is DeliveryOutcome.SENT:
            self.sent += 1
        elif outcome is DeliveryOutcome.FAILED:
            self.failed += 1
            if error:
                self.errors.append(error)
        else:
            self.skipped += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "kind": self.kind,
            "attempted": self.attempted,
            "sent": self.sent,
            "skipped": self.skipped,
            "failed": self.failed,
            "skipped_reason": self.skipped_reason,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class DispatchReport:
    eligible: int
    channels: tuple[ChannelSummary, ...] = ()

    def channel(self, channel: NotificationChannel) -> ChannelSummary | None:
        for summary in self.channels:
            if summary.channel == channel.value:
                return summary
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"eligible": self.eligible, "channels": [c.to_dict() for c in self.channels]}


# ---------------------------------------------------------------------------
# Repository / infrastructure port interfaces
# ---------------------------------------------------------------------------


class ReservationRepository(Protocol):
    """Port: atomic reservation storage."""

    def reserve(
        self,
        key: ReservationKey,
        destination: str,
        severity: str | None,
        claim_token: str,
        now: datetime,
        stale_before: datetime,
    ) -> ConditionalUpdateResult[NotificationReservation]: ...

    def finalize(
        self,
        key: ReservationKey,
        claim_token: str,
        state: ReservationState,
        now: datetime,
        error: str | None = None,
    ) -> ConditionalUpdateResult[NotificationReservation]: ...


class ContactDirectory(Protocol):
    """Port: read-only delivery addresses and opt-ins."""

    def get_contact(self, user_id: str) -> NotificationContact | None: ...


class EmailSender(Protocol):
    def send_email(self, to: str, subject: str, text: str, html: str) -> SendOutcome: ...


class InstantMessageSender(Protocol):
    def send_message(self, to: str, text: str) -> SendOutcome: ...


@dataclass(frozen=True)
class _ChannelPlan:
    channel: NotificationChannel
    kind: NotificationKind
    resolve: Callable[[NotificationContact | None], tuple[str | None, str]]
    deliver: Callable[[str, Anomaly, str], SendOutcome]


def normalize_email(email: str) -> str:
    return email.strip().lower()


def resolve_email(contact: NotificationContact | None) -> tuple[str | None, str]:
    if contact is None or not contact.email or not contact.email.strip():
        return None, "no_email"
    return normalize_email(contact.email), ""


def resolve_instant_message(contact: NotificationContact | None) -> tuple[str | None, str]:
    if contact is None or not contact.instant_message_ready:
        return None, "not_enabled"
    return "".join((contact.instant_message_number or "").split()), ""


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Runs the reservation protocol for every eligible anomaly and channel."""

    def __init__(
        self,
        reservation_repo: ReservationRepository,
        contacts: ContactDirectory,
        email_channel: EmailSender,
        instant_message_channel: InstantMessageSender,
        base_url: str = "http://localhost:3000",
        min_severity: AnomalySeverity = AnomalySeverity.WARNING,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._reservation_repo = reservation_repo
        self._contacts = contacts
        self._email = email_channel
        self._instant_message = instant_message_channel
        self._base_url = base_url
        self._min_severity = min_severity
        self._stale_after = stale_after
        self._clock = clock or (lambda: datetime.now(UTC))
        self._plans = (
            _ChannelPlan(
                NotificationChannel.EMAIL,
                NotificationKind.ANOMALY_EMAIL,
                resolve_email,
                self._deliver_email,
            ),
            _ChannelPlan(
                NotificationChannel.INSTANT_MESSAGE,
                NotificationKind.ANOMALY_INSTANT_MESSAGE,
                resolve_instant_message,
                self._deliver_instant_message,
            ),
        )

    # -- helpers ----------------------------------------------------------

    def _deliver_email(self, destination: str, anomaly: Anomaly, currency: str) -> SendOutcome:
        subject, text, body = render_anomaly_email(anomaly, currency, self._base_url)
        return self._email.send_email(destination, subject, text, body)

    def _deliver_instant_message(
        self, destination: str, anomaly: Anomaly, currency: str
    ) -> SendOutcome:
        text = render_anomaly_instant_message(anomaly, currency, self._base_url)
        return self._instant_message.send_message(destination, text)

    def _lookup_contact(self, user_id: str) -> tuple[NotificationContact | None, str | None]:
        try:
            return self._contacts.get_contact(user_id), None
        except Exception as exc:
            logger.exception("Contact lookup failed for user %s", user_id)
            return None, f"contact lookup failed: {exc}"

    # -- public API -------------------------------------------------------

    def eligible(self, anomalies: Iterable[Anomaly]) -> list[Anomaly]:
        """Anomalies at or above the minimum severity and not resolved."""
        return [
            a
            for a in anomalies
            if a.status != AnomalyStatus.RESOLVED and a.severity.at_least(self._min_severity)
        ]

    def dispatch(
        self,
        user_id: str,
        anomalies: Sequence[Anomaly],
        currency: str = DEFAULT_CURRENCY,
    ) -> DispatchReport:
        """Deliver alerts for *anomalies* on every channel the user can receive."""
        candidates = self.eligible(anomalies)
        if not candidates:
            return DispatchReport(
                eligible=0,
                channels=tuple(ChannelSummary(p.channel.value, p.kind.value) for p in self._plans),
            )

        contact, lookup_error = self._lookup_contact(user_id)
        summaries: list[ChannelSummary] = []

        for plan in self._plans:
            summary = ChannelSummary(plan.channel.value, plan.kind.value)
            summaries.append(summary)

            destination, reason = plan.resolve(contact)
            if destination is None:
                summary.skipped = len(candidates)
                summary.skipped_reason = "contact_lookup_failed" if lookup_error else reason
                if lookup_error:
                    summary.errors.append(lookup_error)
                notifications_total.labels(channel=plan.channel.value, outcome="no_destination").inc(
                    len(candidates)
                )
                continue

            for anomaly in candidates:
                summary.attempted += 1
                key = ReservationKey(
                    user_id=user_id,
                    kind=plan.kind,
                    channel=plan.channel,
                    day=anomaly.day,
                    dimension=anomaly.dimension,
                )
                outcome, error = self.deliver_once(
                    key,
                    destination,
                    anomaly.severity.value,
                    lambda d=destination, a=anomaly, p=plan: p.deliver(d, a, currency),
                )
                summary.record(outcome, error)

        report = DispatchReport(eligible=len(candidates), channels=tuple(summaries))
        logger.info("Dispatch for user %s: %s", user_id, report.to_dict())
        return report

    def deliver_once(
        self,
        key: ReservationKey,
        destination: str,
        severity: str | None,
        send: Callable[[], SendOutcome],
    ) -> tuple[DeliveryOutcome, str | None]:
        """Claim *key*, call *send* if the claim was won, record the result.

        Returns the outcome and, for failures, the recorded error text.
        """
        now = self._clock()
        claim_token = uuid4().hex
        try:
            claim = self._reservation_repo.reserve(
                key, destination, severity, claim_token, now, now - self._stale_after
            )
        except Exception as exc:
            logger.exception("Reservation failed for %s", key)
            notifications_total.labels(channel=key.channel.value, outcome="reserve_error").inc()
            return DeliveryOutcome.FAILED, f"reservation failed: {exc}"

        if not claim.matched:
            notifications_total.labels(channel=key.channel.value, outcome="skipped").inc()
            return DeliveryOutcome.SKIPPED, None

        try:
            outcome = send()
        except Exception as exc:
            logger.exception("Send raised for %s", key)
            outcome = SendOutcome(SendStatus.ERROR, str(exc) or exc.__class__.__name__)

        state = ReservationState.SENT if outcome.ok else ReservationState.FAILED
        error = None if outcome.ok else outcome.describe()
        try:
            finalized = self._reservation_repo.finalize(key, claim_token, state, self._clock(), error)
            if not finalized.matched:
                logger.warning("Claim on %s was taken over before finalizing as %s", key, state.value)
        except Exception:
            logger.exception("Finalizing reservation %s as %s failed", key, state.value)

        notifications_total.labels(channel=key.channel.value, outcome=outcome.status.value).inc()
        if outcome.ok:
            return DeliveryOutcome.SENT, None
        return DeliveryOutcome.FAILED, error

