r"""backend\app\services\weekly_forecast_service.py

Weekly seasonal demand model (Holt-Winters with seasonal factors) and the
weekly demand summary used by the weekly reorder point.

Weeks are keyed by their Monday (UTC).  The model is deliberately small: it
produces a timeline of fitted history plus ``horizon`` forecast weeks and an
in-sample MAPE, which is all the replenishment view needs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from ..models.schemas import (
    WeeklyDemandSummary,
    WeeklyForecastPoint,
    WeeklyForecastResult,
    WeeklyHistoryPoint,
    normalize_date_key,
)
from . import stats

LOGGER = logging.getLogger(__name__)

DEFAULT_MIN_WEEKS = 4
DEFAULT_MAX_WEEKS = 8
WEEKS_PER_MONTH = 4


@dataclass(frozen=True)
class WeeklyForecastOptions:
    alpha: float = 0.3
    beta: float = 0.2
    gamma: float = 0.3
    season_length: int = 4
    horizon: int = 8


def week_start(day: date) -> date:
    """Return the Monday of the week containing ``day``."""

    return day - timedelta(days=day.weekday())


def _parse_week(value: str) -> date:
    try:
        return week_start(date.fromisoformat(normalize_date_key(value)))
    except ValueError:
        return week_start(datetime.now(timezone.utc).date())


def _clamp_probability(value: float) -> float:
    return float(min(max(value, 0.0), 1.0)) if np.isfinite(value) else 0.0


# ---------------------------------------------------------------------------
# History preparation


def normalize_weekly_history(history: Iterable[WeeklyHistoryPoint]) -> List[WeeklyHistoryPoint]:
    """Sum duplicate weeks and sort by week start."""

    totals: Dict[date, float] = {}
    promo_weeks: set[date] = set()
    for point in history:
        key = _parse_week(point.week_start)
        totals[key] = totals.get(key, 0.0) + max(float(point.outbound_quantity), 0.0)
        if point.promo:
            promo_weeks.add(key)
    return [
        WeeklyHistoryPoint(
            week_start=key.isoformat(), outbound_quantity=totals[key], promo=key in promo_weeks
        )
        for key in sorted(totals)
    ]


def weekly_history_from_monthly(monthly_totals: Mapping[str, float]) -> List[WeeklyHistoryPoint]:
    """Spread each month evenly over four weeks starting at the month's first Monday-aligned week."""

    points: List[WeeklyHistoryPoint] = []
    for month_key in sorted(monthly_totals):
        anchor = week_start(date.fromisoformat(month_key[:10]))
        share = max(float(monthly_totals[month_key]), 0.0) / WEEKS_PER_MONTH
        for offset in range(WEEKS_PER_MONTH):
            points.append(
                WeeklyHistoryPoint(
                    week_start=(anchor + timedelta(weeks=offset)).isoformat(),
                    outbound_quantity=share,
                )
            )
    return normalize_weekly_history(points)


def _pad_history(points: List[WeeklyHistoryPoint], min_length: int) -> List[WeeklyHistoryPoint]:
    """Prepend weeks at the mean quantity until ``min_length`` is reached."""

    if not points:
        current = week_start(datetime.now(timezone.utc).date())
        return [
            WeeklyHistoryPoint(week_start=(current - timedelta(weeks=i)).isoformat())
            for i in range(min_length - 1, -1, -1)
        ]
    if len(points) >= min_length:
        return points

    fill = float(np.mean([p.outbound_quantity for p in points]))
    padded = list(points)
    while len(padded) < min_length:
        first = date.fromisoformat(padded[0].week_start)
        padded.insert(
            0,
            WeeklyHistoryPoint(
                week_start=(first - timedelta(weeks=1)).isoformat(), outbound_quantity=fill
            ),
        )
    return padded


# ---------------------------------------------------------------------------
# Holt-Winters


def _initial_seasonals(values: np.ndarray, period: int) -> np.ndarray:
    season_count = len(values) // period
    if season_count < 2:
        return np.ones(period)

    seasons = values[: season_count * period].reshape(season_count, period)
    averages = seasons.mean(axis=1)
    factors = np.ones(period)
    for index in range(period):
        ratios = [seasons[s, index] / averages[s] for s in range(season_count) if averages[s] > 0]
        factors[index] = float(np.mean(ratios)) if ratios else 1.0

    total = factors.sum()
    if total <= 0:
        return np.ones(period)
    return factors * period / total


def _initial_trend(values: np.ndarray, period: int) -> float:
    if len(values) >= period * 2:
        return float(np.sum((values[period : 2 * period] - values[:period]) / period) / period)
    return float((values[-1] - values[0]) / max(len(values) - 1, 1))


def build_weekly_forecast(
    history: Sequence[WeeklyHistoryPoint],
    options: Optional[WeeklyForecastOptions] = None,
) -> WeeklyForecastResult:
    opts = options or WeeklyForecastOptions()
    period = min(max(int(opts.season_length), 2), 12)
    horizon = max(1, int(opts.horizon))
    alpha = _clamp_probability(opts.alpha)
    beta = _clamp_probability(opts.beta)
    gamma = _clamp_probability(opts.gamma)

    points = _pad_history(normalize_weekly_history(history), period * 3)
    values = np.array([p.outbound_quantity for p in points], dtype=float)
    last_week = date.fromisoformat(points[-1].week_start)

    if not values.any():
        timeline = [
            WeeklyForecastPoint(
                week_start=p.week_start, actual=p.outbound_quantity, forecast=0, phase="history", promo=p.promo
            )
            for p in points
        ]
        timeline.extend(
            WeeklyForecastPoint(
                week_start=(last_week + timedelta(weeks=step)).isoformat(), forecast=0, phase="forecast"
            )
            for step in range(1, horizon + 1)
        )
        return WeeklyForecastResult(
            timeline=timeline, seasonal_factors=[1.0] * period, seasonal_period=period
        )

    level = float(values[: min(period, len(values))].mean())
    trend = _initial_trend(values, period)
    seasonals = _initial_seasonals(values, period)

    fitted: List[float] = []
    for index, actual in enumerate(values):
        season_index = index % period
        previous_seasonal = seasonals[season_index]
        fitted.append(max((level + trend) * previous_seasonal, 0.0))

        previous_level, previous_trend = level, trend
        deseasonalised = actual / previous_seasonal if previous_seasonal > 0 else actual
        level = alpha * deseasonalised + (1 - alpha) * (previous_level + previous_trend)
        trend = beta * (level - previous_level) + (1 - beta) * previous_trend

        updated = previous_seasonal
        if level > 0:
            candidate = gamma * (actual / level) + (1 - gamma) * previous_seasonal
            if np.isfinite(candidate) and candidate > 0:
                updated = candidate
        seasonals[season_index] = min(max(updated, 0.01), 10.0)

    timeline = [
        WeeklyForecastPoint(
            week_start=p.week_start,
            actual=p.outbound_quantity,
            forecast=stats.non_negative_int(fitted[i]),
            phase="history",
            promo=p.promo,
        )
        for i, p in enumerate(points)
    ]
    for step in range(1, horizon + 1):
        factor = seasonals[(len(values) + step - 1) % period]
        timeline.append(
            WeeklyForecastPoint(
                week_start=(last_week + timedelta(weeks=step)).isoformat(),
                forecast=stats.non_negative_int(max((level + trend * step) * factor, 0.0)),
                phase="forecast",
            )
        )

    errors = [abs(a - f) / a for a, f in zip(values, fitted) if a > 0]
    mape = stats.round_half_up(float(np.mean(errors)) * 1000) / 10.0 if errors else None

    total = seasonals.sum()
    factors = seasonals * period / total if total > 0 else seasonals
    LOGGER.debug("Weekly forecast built over %d weeks (MAPE=%s)", len(values), mape)
    return WeeklyForecastResult(
        timeline=timeline,
        seasonal_factors=[float(f) for f in factors],
        seasonal_period=period,
        level=level,
        trend=trend,
        mean_absolute_percent_error=mape,
    )


# ---------------------------------------------------------------------------
# Summary


def summarize_weekly_demand(
    history: Sequence[WeeklyHistoryPoint],
    min_weeks: int = DEFAULT_MIN_WEEKS,
    max_weeks: int = DEFAULT_MAX_WEEKS,
    exclude_promo_weeks: bool = False,
) -> WeeklyDemandSummary:
    """Mean and sample standard deviation (N - 1) of the most recent weeks."""

    min_weeks = min(max(int(min_weeks), 1), 16)
    max_weeks = min(max(int(max_weeks), min_weeks), 26)

    eligible = [
        max(float(p.outbound_quantity), 0.0)
        for p in history
        if not (exclude_promo_weeks and p.promo)
    ]
    if not eligible:
        return WeeklyDemandSummary()

    window = np.array(eligible[-min(max(min_weeks, len(eligible)), max_weeks) :], dtype=float)
    mean = float(window.mean())
    std_dev = float(window.std(ddof=1)) if window.size > 1 else 0.0
    return WeeklyDemandSummary(
        mean=mean,
        std_dev=max(std_dev, 0.0),
        sample_size=int(window.size),
        total_quantity=float(window.sum()),
    )
