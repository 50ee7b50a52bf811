"""
Rolling-baseline spike detection for daily spend series.

For every day with at least ``WINDOW`` days of history, the preceding window
supplies a baseline (mean) and a sample standard deviation. A day is flagged
when its spend rises far enough above the baseline, with severity derived
from the percentage jump alone. The z-score is carried as a diagnostic.

The engine is pure: identical input always yields identical output.
"""

from __future__ import annotations

import math
import statistics
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from domain.models.billing import (
    DEFAULT_CURRENCY,
    TOTAL_DIMENSION,
    AnomalyDetection,
    AnomalySeverity,
    DailyPoint,
)

WINDOW = 7
TOTAL_LABEL = "Total spend"

CURRENCY_SYMBOLS: dict[str, str] = {"USD": "$", "EUR": "€", "GBP": "£"}

# Lower bound of each severity band, checked highest first.
SEVERITY_BANDS: tuple[tuple[float, AnomalySeverity], ...] = (
    (1.0, AnomalySeverity.CRITICAL),
    (0.5, AnomalySeverity.WARNING),
    (0.25, AnomalySeverity.INFO),
)


@dataclass(frozen=True)
class DetectionThresholds:
    """Absolute noise gates applied before the percentage test."""

    min_observed: float = 1.0
    min_abs_delta: float = 1.0
    # Optional "new spend" gate: with a baseline under min_baseline, only
    # flag when observed reaches min_observed_if_baseline_tiny.
    min_baseline: float = 0.0
    min_observed_if_baseline_tiny: float = 0.0


TOTAL_THRESHOLDS = DetectionThresholds()

# Service series are noisier and smaller; new spend on a service with a
# near-zero baseline only counts once it is a real amount.
SERVICE_THRESHOLDS = DetectionThresholds(
    min_observed=2.0,
    min_abs_delta=2.0,
    min_baseline=1.0,
    min_observed_if_baseline_tiny=8.0,
)


def format_money(amount: float, currency: str = DEFAULT_CURRENCY) -> str:
    safe = amount if math.isfinite(amount) else 0.0
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    sign = "-" if safe < 0 else ""
    body = f"{abs(safe):,.2f}"
    if symbol is None:
        return f"{sign}{currency.upper()} {body}"
    return f"{sign}{symbol}{body}"


def format_pct(pct_change: float) -> str:
    """Render a ratio as a whole percentage, rounding halves up."""
    if not math.isfinite(pct_change):
        return "∞"
    return f"{math.floor(pct_change * 100 + 0.5)}%"


def severity_for(pct_change: float) -> AnomalySeverity | None:
    if math.isinf(pct_change) and pct_change > 0:
        return AnomalySeverity.CRITICAL
    for lower_bound, severity in SEVERITY_BANDS:
        if pct_change >= lower_bound:
            return severity
    return None


def dimension_label(dimension: str) -> str:
    return TOTAL_LABEL if dimension == TOTAL_DIMENSION else dimension


class AnomalyEngine:
    """
    Stateless spike classifier over gap-free daily series.

    Parameters
    ----------
    thresholds:
        Noise gates for the ``TOTAL`` series; defaults suppress anything
        under one currency unit.
    service_thresholds:
        Noise gates for every other dimension.
    window:
        Number of preceding days forming the baseline.
    """

    def __init__(
        self,
        thresholds: DetectionThresholds | None = None,
        window: int = WINDOW,
        service_thresholds: DetectionThresholds | None = None,
    ) -> None:
        self._thresholds = thresholds or TOTAL_THRESHOLDS
        self._service_thresholds = service_thresholds or SERVICE_THRESHOLDS
        self._window = window

    @property
    def window(self) -> int:
        return self._window

    def detect_series(
        self,
        points: Sequence[DailyPoint],
        dimension: str = TOTAL_DIMENSION,
        currency: str | None = None,
    ) -> list[AnomalyDetection]:
        """
        Score every day of *points* that has a full baseline window.

        Parameters
        ----------
        points:
            Daily observations for one dimension. Callers fill missing days
            with zero; the points are sorted by day here regardless.
        dimension:
            Service name, or ``TOTAL`` for the aggregate series.
        currency:
            Currency used in messages; defaults to the first point's.

        Returns
        -------
        list[AnomalyDetection]
            One entry per flagged day, in date order.
        """
        ordered = sorted(points, key=lambda p: p.day)
        if len(ordered) <= self._window:
            return []

        unit = currency or ordered[0].currency
        gates = self._thresholds if dimension == TOTAL_DIMENSION else self._service_thresholds
        detections: list[AnomalyDetection] = []

        for i in range(self._window, len(ordered)):
            window_amounts = [p.amount for p in ordered[i - self._window : i]]
            baseline = self._mean(window_amounts)
            sd = self._sample_std(window_amounts)

            observed = ordered[i].amount
            delta = observed - baseline

            if observed < gates.min_observed:
                continue
            if delta < gates.min_abs_delta:
                continue
            if (
                baseline < gates.min_baseline
                and observed < gates.min_observed_if_baseline_tiny
            ):
                continue

            pct_change = delta / baseline if baseline > 0 else math.inf
            if not pct_change > 0:
                continue

            severity = severity_for(pct_change)
            if severity is None:
                continue

            detections.append(
                AnomalyDetection(
                    day=ordered[i].day,
                    dimension=dimension,
                    observed=observed,
                    baseline=baseline,
                    pct_change=pct_change,
                    z_score=delta / sd if sd > 0 else None,
                    severity=severity,
                    message=self.describe(dimension, pct_change, observed, baseline, unit),
                    currency=unit,
                )
            )

        return detections

    def detect_dimensions(
        self,
        series_by_dimension: Mapping[str, Sequence[DailyPoint]],
        dimensions: Iterable[str],
        currency: str = DEFAULT_CURRENCY,
    ) -> list[AnomalyDetection]:
        """Score each named dimension independently; others are ignored."""
        detections: list[AnomalyDetection] = []
        for dimension in dimensions:
            points = series_by_dimension.get(dimension)
            if not points:
                continue
            detections.extend(self.detect_series(points, dimension, currency))
        return detections

    def describe(
        self,
        dimension: str,
        pct_change: float,
        observed: float,
        baseline: float,
        currency: str,
    ) -> str:
        return (
            f"{dimension_label(dimension)} jumped {format_pct(pct_change)} "
            f"vs {self._window}-day baseline "
            f"({format_money(observed, currency)} vs {format_money(baseline, currency)})."
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _mean(values: Sequence[float]) -> float:
        return statistics.fmean(values) if values else 0.0

    @staticmethod
    def _sample_std(values: Sequence[float]) -> float:
        if len(values) <= 1 or len(set(values)) == 1:
            return 0.0
        return statistics.stdev(values)
