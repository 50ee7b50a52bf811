from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID, uuid4

TOTAL_DIMENSION = "TOTAL"
SOURCE_AWS_COST_EXPLORER = "aws_ce"
DEFAULT_CURRENCY = "USD"


class AnomalySeverity(enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]

    def at_least(self, minimum: AnomalySeverity) -> bool:
        return self.rank >= minimum.rank


SEVERITY_RANK: dict[AnomalySeverity, int] = {
    AnomalySeverity.INFO: 1,
    AnomalySeverity.WARNING: 2,
    AnomalySeverity.CRITICAL: 3,
}


class AnomalyStatus(enum.Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class DailyPoint:
    """One gap-free observation fed to the anomaly engine."""

    day: date
    amount: float
    currency: str = DEFAULT_CURRENCY


@dataclass(frozen=True)
class ProviderCostRow:
    """A single (day, dimension) row as returned by the billing provider."""

    day: date
    dimension: str
    amount: float
    currency: str = DEFAULT_CURRENCY


@dataclass
class CostPoint:
    user_id: str
    day: date
    dimension: str
    amount: float = 0.0
    currency: str = DEFAULT_CURRENCY
    source: str = SOURCE_AWS_COST_EXPLORER
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class AnomalyDetection:
    """Detection fields produced by the engine for one (day, dimension)."""

    day: date
    dimension: str
    observed: float
    baseline: float
    pct_change: float
    z_score: float | None
    severity: AnomalySeverity
    message: str
    currency: str = DEFAULT_CURRENCY


@dataclass
class Anomaly:
    user_id: str
    day: date
    dimension: str
    observed: float
    baseline: float
    pct_change: float
    severity: AnomalySeverity
    message: str
    z_score: float | None = None
    currency: str = DEFAULT_CURRENCY
    status: AnomalyStatus = AnomalyStatus.OPEN
    insight: dict[str, Any] | None = None
    insight_status: str | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_total(self) -> bool:
        return self.dimension == TOTAL_DIMENSION

    @classmethod
    def from_detection(cls, user_id: str, detection: AnomalyDetection) -> Anomaly:
        return cls(
            user_id=user_id,
            day=detection.day,
            dimension=detection.dimension,
            observed=detection.observed,
            baseline=detection.baseline,
            pct_change=detection.pct_change,
            z_score=detection.z_score,
            severity=detection.severity,
            message=detection.message,
            currency=detection.currency,
        )
