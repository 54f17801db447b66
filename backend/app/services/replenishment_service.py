"""Safety stock, reorder point and order quantity calculations."""

from __future__ import annotations

import logging
import math
from statistics import NormalDist
from typing import Dict, Optional, Protocol

from ..core.errors import InsufficientDataError, ValidationError
from ..models.schemas import (
    ReplenishmentMetrics,
    ReplenishmentPolicy,
    StockState,
    WeeklyDemandSummary,
    WeeklyReplenishmentMetrics,
)
from . import stats

LOGGER = logging.getLogger(__name__)

DAYS_PER_WEEK = 7.0


class DemandEstimate(Protocol):
    forecast_demand: Optional[int]
    demand_std_dev: Optional[int]


def _checked(name: str, value: Optional[float]) -> float:
    """Return ``value`` as a float or raise :class:`ValidationError`."""

    if value is None:
        raise ValidationError(f"{name} is required")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a number") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite")
    if number < 0:
        raise ValidationError(f"{name} must not be negative")
    return number


# ---------------------------------------------------------------------------
def z_for_service_level(service_level_percent: float) -> float:
    """Return the one-sided z-score for a service level given in percent."""

    level = float(service_level_percent)
    if not math.isfinite(level):
        level = 95.0
    level = max(50.0, min(level, 99.9)) / 100.0
    return NormalDist().inv_cdf(level)


def available_stock(stock: StockState) -> int:
    on_hand = _checked("on_hand", stock.on_hand)
    reserved = _checked("reserved", stock.reserved)
    return stats.non_negative_int(max(on_hand - reserved, 0.0))


def safety_stock(std_dev: float, lead_time_days: float, z_value: float, rho: float) -> int:
    """``Z * sigma * sqrt(L * (1 + rho))`` rounded half up."""

    sigma = _checked("demand_std_dev", std_dev)
    lead_time = _checked("lead_time_days", lead_time_days)
    z_value = _checked("service_level_z", z_value)
    if not 0.0 <= rho < 1.0:
        raise ValidationError("correlation_rho must lie in [0, 1)")
    return stats.non_negative_int(z_value * sigma * math.sqrt(lead_time * (1.0 + rho)))


def reorder_point(
    daily_avg: float,
    lead_time_days: float,
    safety_stock_units: float,
    configured_reorder_point: float = 0.0,
) -> int:
    """Demand over the lead time plus safety stock, never below the configured floor."""

    demand = _checked("forecast_demand", daily_avg)
    lead_time = _checked("lead_time_days", lead_time_days)
    floor = _checked("configured_reorder_point", configured_reorder_point)
    computed = stats.non_negative_int(demand * lead_time + safety_stock_units)
    return max(stats.non_negative_int(floor), computed)


def recommended_order_quantity(reorder_point_units: int, available: int) -> int:
    return max(reorder_point_units - available, 0)


# ---------------------------------------------------------------------------
def compute_replenishment(
    estimate: DemandEstimate,
    policy: ReplenishmentPolicy,
    stock_state: StockState,
) -> ReplenishmentMetrics:
    """Derive replenishment metrics from a demand estimate.

    Raises
    ------
    InsufficientDataError
        The estimate carries no forecast (the baseline cascade failed).
    ValidationError
        Any input is negative or non-finite.
    """

    if estimate.forecast_demand is None:
        raise InsufficientDataError("no demand forecast available for replenishment")

    daily_avg = _checked("forecast_demand", estimate.forecast_demand)
    std_dev = estimate.demand_std_dev
    if std_dev is None:
        std_dev = 0
    available = available_stock(stock_state)

    ss = safety_stock(std_dev, policy.lead_time_days, policy.service_level_z, policy.correlation_rho)
    rop = reorder_point(daily_avg, policy.lead_time_days, ss, policy.configured_reorder_point)
    qty = recommended_order_quantity(rop, available)

    LOGGER.debug(
        "Replenishment: avg=%.2f std=%.2f lead=%.1f ss=%d rop=%d qty=%d",
        daily_avg,
        float(std_dev),
        policy.lead_time_days,
        ss,
        rop,
        qty,
    )
    return ReplenishmentMetrics(
        safety_stock=ss,
        reorder_point=rop,
        recommended_order_quantity=qty,
        available_stock=available,
    )


def compute_weekly_replenishment(
    summary: WeeklyDemandSummary,
    lead_time_days: float,
    service_level_z: float,
    available: int,
) -> WeeklyReplenishmentMetrics:
    """Weekly reorder point ``avg_w * L_w + Z * sigma_w * sqrt(L_w)``.

    A zero lead time yields ``None`` for the reorder point and the order
    quantity: the weekly figures are not computable rather than zero.
    """

    lead_time_weeks = _checked("lead_time_days", lead_time_days) / DAYS_PER_WEEK
    avg_weekly = _checked("avg_weekly_demand", summary.mean)
    std_weekly = _checked("weekly_std_dev", summary.std_dev)
    z_value = _checked("service_level_z", service_level_z)

    rop_weekly: Optional[int] = None
    qty_weekly: Optional[int] = None
    if lead_time_weeks > 0:
        rop_weekly = stats.non_negative_int(
            avg_weekly * lead_time_weeks + z_value * std_weekly * math.sqrt(lead_time_weeks)
        )
        qty_weekly = recommended_order_quantity(rop_weekly, int(available))

    return WeeklyReplenishmentMetrics(
        lead_time_weeks=round(lead_time_weeks, 4),
        avg_weekly_demand=stats.non_negative_int(avg_weekly),
        weekly_std_dev=stats.non_negative_int(std_weekly),
        reorder_point_weekly=rop_weekly,
        recommended_order_quantity_weekly=qty_weekly,
    )


def describe_replenishment(
    daily_avg: float,
    std_dev: float,
    policy: ReplenishmentPolicy,
    metrics: ReplenishmentMetrics,
) -> Dict[str, str]:
    """Human readable breakdown of each figure for the API response."""

    lead_time = policy.lead_time_days
    computed_rop = stats.non_negative_int(daily_avg * lead_time + metrics.safety_stock)
    return {
        "available_stock": f"max(on_hand - reserved, 0) = {metrics.available_stock:,}",
        "safety_stock": (
            f"{policy.service_level_z:.4f} x {std_dev:g} x sqrt({lead_time:g} x "
            f"(1 + {policy.correlation_rho:g})) = {metrics.safety_stock:,}"
        ),
        "reorder_point": (
            f"max({policy.configured_reorder_point:,.0f}, {daily_avg:g} x {lead_time:g} + "
            f"{metrics.safety_stock:,} = {computed_rop:,}) = {metrics.reorder_point:,}"
        ),
        "recommended_order_quantity": (
            f"max({metrics.reorder_point:,} - {metrics.available_stock:,}, 0) = "
            f"{metrics.recommended_order_quantity:,}"
        ),
    }
