from __future__ import annotations

import math
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.app.core.errors import InsufficientDataError, ValidationError
from backend.app.models.schemas import (
    RecommendationResult,
    ReplenishmentPolicy,
    StockState,
    WeeklyDemandSummary,
)
from backend.app.services import replenishment_service as rs


def test_reorder_point_scenario() -> None:
    available = rs.available_stock(StockState(on_hand=500, reserved=50))
    rop = rs.reorder_point(100, 7, 80, 600)

    assert available == 450
    assert rop == 780
    assert rs.recommended_order_quantity(rop, available) == 330


def test_configured_floor_wins_when_higher() -> None:
    assert rs.reorder_point(10, 7, 5, 600) == 600


def test_safety_stock_formula() -> None:
    # 1.6449 * 10 * sqrt(7 * 1.25) = 48.66
    assert rs.safety_stock(10, 7, 1.6449, 0.25) == 49
    assert rs.safety_stock(0, 7, 1.6449, 0.25) == 0


def test_z_for_service_level() -> None:
    assert rs.z_for_service_level(95) == pytest.approx(1.6449, abs=1e-3)
    assert rs.z_for_service_level(50) == pytest.approx(0.0, abs=1e-9)


def test_compute_replenishment_end_to_end() -> None:
    estimate = RecommendationResult(forecast_demand=100, demand_std_dev=0, lead_time_days=7, service_level_percent=95)
    policy = ReplenishmentPolicy(lead_time_days=7, configured_reorder_point=600)

    metrics = rs.compute_replenishment(estimate, policy, StockState(on_hand=500, reserved=50))

    assert metrics.safety_stock == 0
    assert metrics.reorder_point == 700
    assert metrics.recommended_order_quantity == 250
    assert metrics.available_stock == 450


def test_reserved_above_on_hand_clamps_available_to_zero() -> None:
    assert rs.available_stock(StockState(on_hand=10, reserved=40)) == 0


def test_missing_forecast_raises_insufficient_data() -> None:
    estimate = RecommendationResult(lead_time_days=7, service_level_percent=95)
    with pytest.raises(InsufficientDataError):
        rs.compute_replenishment(estimate, ReplenishmentPolicy(lead_time_days=7), StockState(on_hand=1))


@pytest.mark.parametrize("value", [-1.0, math.inf, math.nan])
def test_invalid_inputs_raise_validation_error(value: float) -> None:
    with pytest.raises(ValidationError):
        rs.reorder_point(value, 7, 0)
    with pytest.raises(ValidationError):
        rs.safety_stock(value, 7, 1.64, 0.25)


def test_weekly_reorder_point() -> None:
    summary = WeeklyDemandSummary(mean=70, std_dev=14, sample_size=8)
    weekly = rs.compute_weekly_replenishment(summary, 14, 1.6449, 50)

    assert weekly.lead_time_weeks == 2.0
    # 70*2 + 1.6449*14*sqrt(2) = 172.57
    assert weekly.reorder_point_weekly == 173
    assert weekly.recommended_order_quantity_weekly == 123


def test_weekly_zero_lead_time_is_not_computable() -> None:
    summary = WeeklyDemandSummary(mean=70, std_dev=14, sample_size=8)
    weekly = rs.compute_weekly_replenishment(summary, 0, 1.6449, 50)

    assert weekly.reorder_point_weekly is None
    assert weekly.recommended_order_quantity_weekly is None
    assert weekly.avg_weekly_demand == 70


def test_describe_replenishment_mentions_floor() -> None:
    policy = ReplenishmentPolicy(lead_time_days=7, configured_reorder_point=600)
    estimate = RecommendationResult(forecast_demand=100, demand_std_dev=0, lead_time_days=7, service_level_percent=95)
    metrics = rs.compute_replenishment(estimate, policy, StockState(on_hand=500, reserved=50))

    text = rs.describe_replenishment(100, 0, policy, metrics)

    assert text["reorder_point"].startswith("max(600,")
    assert text["recommended_order_quantity"].endswith("= 250")
