from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, date, datetime


class NotificationChannel(enum.Enum):
    EMAIL = "email"
    INSTANT_MESSAGE = "whatsapp"


class NotificationKind(enum.Enum):
    ANOMALY_EMAIL = "anomaly_email"
    ANOMALY_INSTANT_MESSAGE = "anomaly_whatsapp"
    WEEKLY_REPORT = "weekly_report"


class ReservationState(enum.Enum):
    RESERVED = "reserved"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class ReservationKey:
    """Uniqueness key of a notification reservation."""

    user_id: str
    kind: NotificationKind
    channel: NotificationChannel
    day: date
    dimension: str


@dataclass
class NotificationReservation:
    user_id: str
    kind: NotificationKind
    channel: NotificationChannel
    day: date
    dimension: str
    destination: str
    state: ReservationState = ReservationState.RESERVED
    severity: str | None = None
    claim_token: str | None = None
    attempts: int = 0
    last_error: str | None = None
    sent_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> ReservationKey:
        return ReservationKey(self.user_id, self.kind, self.channel, self.day, self.dimension)


@dataclass
class NotificationContact:
    """Delivery addresses and opt-ins for one user, owned by the product."""

    user_id: str
    email: str | None = None
    instant_message_number: str | None = None
    instant_message_enabled: bool = False
    instant_message_verified_at: datetime | None = None

    @property
    def instant_message_ready(self) -> bool:
        return bool(
            self.instant_message_enabled
            and self.instant_message_verified_at is not None
            and self.instant_message_number
        )


class SendStatus(enum.Enum):
    OK = "ok"
    DISABLED = "disabled"
    QUOTA = "quota"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(frozen=True)
class SendOutcome:
    """Result of one channel send primitive; soft states never raise."""

    status: SendStatus
    message: str = ""
    provider_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == SendStatus.OK

    @property
    def soft(self) -> bool:
        return self.status in (SendStatus.DISABLED, SendStatus.QUOTA, SendStatus.UNAVAILABLE)

    def describe(self) -> str:
        if self.ok:
            return "sent"
        return f"{self.status.value}: {self.message}" if self.message else self.status.value
