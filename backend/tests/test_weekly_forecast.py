from __future__ import annotations

import sys
from datetime import date, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.app.models.schemas import WeeklyHistoryPoint
from backend.app.services.weekly_forecast_service import (
    WeeklyForecastOptions,
    build_weekly_forecast,
    normalize_weekly_history,
    summarize_weekly_demand,
    week_start,
    weekly_history_from_monthly,
)


def _weeks(values, start=date(2024, 1, 1), promo=()):
    return [
        WeeklyHistoryPoint(
            week_start=(start + timedelta(weeks=i)).isoformat(),
            outbound_quantity=value,
            promo=i in promo,
        )
        for i, value in enumerate(values)
    ]


def test_week_start_is_monday() -> None:
    assert week_start(date(2024, 6, 5)) == date(2024, 6, 3)
    assert week_start(date(2024, 6, 3)) == date(2024, 6, 3)


def test_normalize_merges_days_into_their_week() -> None:
    points = [
        WeeklyHistoryPoint(week_start="2024-06-05", outbound_quantity=10, promo=True),
        WeeklyHistoryPoint(week_start="2024-06-03", outbound_quantity=5),
        WeeklyHistoryPoint(week_start="2024-05-27", outbound_quantity=1),
    ]
    merged = normalize_weekly_history(points)

    assert [p.week_start for p in merged] == ["2024-05-27", "2024-06-03"]
    assert merged[1].outbound_quantity == 15
    assert merged[1].promo is True


def test_monthly_totals_spread_over_four_weeks() -> None:
    weeks = weekly_history_from_monthly({"2024-01-01": 400})
    assert [p.outbound_quantity for p in weeks] == [100, 100, 100, 100]
    assert weeks[0].week_start == "2024-01-01"


def test_flat_history_forecasts_flat_demand() -> None:
    result = build_weekly_forecast(_weeks([100] * 12))

    history = [p for p in result.timeline if p.phase == "history"]
    forecast = [p for p in result.timeline if p.phase == "forecast"]
    assert len(history) == 12
    assert len(forecast) == 8
    assert {p.forecast for p in forecast} == {100}
    assert forecast[0].week_start == (date(2024, 1, 1) + timedelta(weeks=12)).isoformat()
    assert result.mean_absolute_percent_error == 0.0
    assert result.seasonal_factors == pytest.approx([1.0] * 4)


def test_short_history_is_padded_and_horizon_respected() -> None:
    result = build_weekly_forecast(_weeks([40, 60]), WeeklyForecastOptions(horizon=3))

    assert len([p for p in result.timeline if p.phase == "history"]) == 12
    assert len([p for p in result.timeline if p.phase == "forecast"]) == 3


def test_all_zero_history_forecasts_zero() -> None:
    result = build_weekly_forecast(_weeks([0] * 6))
    assert all(p.forecast == 0 for p in result.timeline)
    assert result.mean_absolute_percent_error is None


def test_summary_uses_sample_std() -> None:
    summary = summarize_weekly_demand(_weeks([10, 20, 30, 40]))
    assert summary.mean == pytest.approx(25.0)
    assert summary.std_dev == pytest.approx(12.9099, rel=1e-3)
    assert summary.sample_size == 4
    assert summary.total_quantity == 100


def test_summary_window_and_promo_exclusion() -> None:
    history = _weeks([1000, 1000] + [50] * 8, promo=(9,))
    assert summarize_weekly_demand(history).sample_size == 8
    assert summarize_weekly_demand(history).mean == pytest.approx(50.0)

    without_promo = summarize_weekly_demand(history, exclude_promo_weeks=True)
    assert without_promo.sample_size == 8
    assert without_promo.mean == pytest.approx((1000 + 50 * 7) / 8)


def test_summary_of_empty_history() -> None:
    summary = summarize_weekly_demand([])
    assert summary.sample_size == 0
    assert summary.mean == 0.0
