"""Helpers turning sparse provider rows into gap-free daily series."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

from domain.models.billing import DEFAULT_CURRENCY, TOTAL_DIMENSION, DailyPoint, ProviderCostRow


@dataclass(frozen=True)
class FilledSeries:
    """Every dimension laid over the same complete date axis."""

    axis: list[date]
    currency: str = DEFAULT_CURRENCY
    total: list[DailyPoint] = field(default_factory=list)
    by_dimension: dict[str, list[DailyPoint]] = field(default_factory=dict)

    @property
    def dimensions(self) -> list[str]:
        return sorted(self.by_dimension)

    def cells(self) -> list[tuple[str, DailyPoint]]:
        """All (dimension, point) cells, TOTAL first, in a stable order."""
        out = [(TOTAL_DIMENSION, p) for p in self.total]
        for dimension in self.dimensions:
            out.extend((dimension, p) for p in self.by_dimension[dimension])
        return out


def date_axis(start: date, end_exclusive: date) -> list[date]:
    days = (end_exclusive - start).days
    return [start + timedelta(days=i) for i in range(max(days, 0))]


def fill_series(
    rows: Iterable[ProviderCostRow],
    start: date,
    end_exclusive: date,
) -> FilledSeries:
    """Lay provider rows over ``[start, end_exclusive)`` filling gaps with 0.

    Rows outside the window are dropped. When the provider supplied its own
    ``TOTAL`` rows those win; otherwise the total is the per-day sum of all
    dimensions. Amounts are clamped at zero so credits never yield
    negative spend.
    """
    axis = date_axis(start, end_exclusive)
    in_window = set(axis)

    currency: str | None = None
    totals: dict[date, float] = {}
    amounts: dict[str, dict[date, float]] = {}
    provider_total = False

    for row in rows:
        if row.day not in in_window:
            continue
        if currency is None and row.currency:
            currency = row.currency
        if row.dimension == TOTAL_DIMENSION:
            provider_total = True
            totals[row.day] = totals.get(row.day, 0.0) + row.amount
            continue
        by_day = amounts.setdefault(row.dimension, {})
        by_day[row.day] = by_day.get(row.day, 0.0) + row.amount

    unit = currency or DEFAULT_CURRENCY

    if not provider_total:
        for by_day in amounts.values():
            for day, amount in by_day.items():
                totals[day] = totals.get(day, 0.0) + amount

    return FilledSeries(
        axis=axis,
        currency=unit,
        total=[DailyPoint(day, max(0.0, totals.get(day, 0.0)), unit) for day in axis],
        by_dimension={
            dimension: [DailyPoint(day, max(0.0, by_day.get(day, 0.0)), unit) for day in axis]
            for dimension, by_day in amounts.items()
        },
    )


def top_dimensions(
    series_by_dimension: Mapping[str, Sequence[DailyPoint]],
    limit: int,
) -> list[str]:
    """Largest dimensions by spend over the series; ties break by name."""
    if limit <= 0:
        return []
    totals = [
        (dimension, sum(p.amount for p in points))
        for dimension, points in series_by_dimension.items()
        if dimension != TOTAL_DIMENSION
    ]
    ranked = sorted((t for t in totals if t[1] > 0), key=lambda t: (-t[1], t[0]))
    return [dimension for dimension, _ in ranked[:limit]]
