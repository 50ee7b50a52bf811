"""Unit tests for gap filling and dimension ranking."""

from __future__ import annotations

from datetime import date, timedelta

from domain.models.billing import TOTAL_DIMENSION, DailyPoint, ProviderCostRow
from domain.services.series import date_axis, fill_series, top_dimensions

START = date(2026, 2, 1)
END = date(2026, 2, 5)


def row(offset: int, dimension: str, amount: float, currency: str = "USD") -> ProviderCostRow:
    return ProviderCostRow(START + timedelta(days=offset), dimension, amount, currency)


class TestDateAxis:

    def test_half_open_range(self):
        assert date_axis(START, END) == [START + timedelta(days=i) for i in range(4)]

    def test_empty_when_reversed(self):
        assert date_axis(END, START) == []


class TestFillSeries:

    def test_missing_days_are_zero(self):
        filled = fill_series([row(1, "Amazon EC2", 4.0)], START, END)
        ec2 = filled.by_dimension["Amazon EC2"]
        assert [p.amount for p in ec2] == [0.0, 4.0, 0.0, 0.0]
        assert [p.amount for p in filled.total] == [0.0, 4.0, 0.0, 0.0]

    def test_total_is_summed_when_provider_sends_none(self):
        filled = fill_series(
            [row(0, "Amazon EC2", 4.0), row(0, "Amazon S3", 1.5), row(2, "Amazon S3", 2.0)],
            START,
            END,
        )
        assert [p.amount for p in filled.total] == [5.5, 0.0, 2.0, 0.0]

    def test_provider_total_wins(self):
        filled = fill_series(
            [row(0, "Amazon EC2", 4.0), row(0, TOTAL_DIMENSION, 9.0)], START, END
        )
        assert filled.total[0].amount == 9.0
        assert TOTAL_DIMENSION not in filled.by_dimension

    def test_rows_outside_window_are_dropped(self):
        filled = fill_series([row(-1, "Amazon EC2", 4.0), row(4, "Amazon EC2", 4.0)], START, END)
        assert all(p.amount == 0.0 for p in filled.total)

    def test_negative_amounts_are_clamped_to_zero(self):
        filled = fill_series(
            [row(0, TOTAL_DIMENSION, -40.0), row(0, "Refund", -5.0), row(1, TOTAL_DIMENSION, 3.0)],
            START,
            END,
        )
        assert [p.amount for p in filled.total] == [0.0, 3.0, 0.0, 0.0]
        assert all(p.amount == 0.0 for p in filled.by_dimension["Refund"])

    def test_currency_comes_from_rows(self):
        filled = fill_series([row(0, "Amazon EC2", 4.0, "EUR")], START, END)
        assert filled.currency == "EUR"
        assert filled.total[0].currency == "EUR"

    def test_cells_put_total_first(self):
        filled = fill_series([row(0, "b", 1.0), row(0, "a", 1.0)], START, END)
        dims = [d for d, _ in filled.cells()]
        assert dims[:4] == [TOTAL_DIMENSION] * 4
        assert dims[4:8] == ["a"] * 4
        assert len(dims) == 12


class TestTopDimensions:

    def test_ranked_by_spend_then_name(self):
        day = START
        by_dimension = {
            "b": [DailyPoint(day, 5.0)],
            "a": [DailyPoint(day, 5.0)],
            "c": [DailyPoint(day, 9.0)],
            "zero": [DailyPoint(day, 0.0)],
        }
        assert top_dimensions(by_dimension, 10) == ["c", "a", "b"]
        assert top_dimensions(by_dimension, 1) == ["c"]
        assert top_dimensions(by_dimension, 0) == []
