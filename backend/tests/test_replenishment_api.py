r"""backend/tests/test_replenishment_api.py"""

from __future__ import annotations

import sys
import time
from datetime import date
from pathlib import Path
from typing import List, Optional

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.app.core.config import PolicyConfig  # noqa: E402
from backend.app.main import app  # noqa: E402
from backend.app.models.schemas import (  # noqa: E402
    AdvisoryCandidate,
    ProductRecord,
    StockState,
    WeeklyHistoryPoint,
)
from backend.app.services.advisory_service import AdvisoryGuard  # noqa: E402
from backend.app.services.baseline_service import BaselineResolver  # noqa: E402
from backend.app.services.inventory_service import InventoryService  # noqa: E402
from backend.app.services.recommendation_service import RecommendationService  # noqa: E402

client = TestClient(app)

TODAY = date(2024, 6, 30)


MODULE = "backend.app.api.v1.recommendations"


class FixedAdvisory:
    def __init__(self, candidate: AdvisoryCandidate) -> None:
        self.candidate = candidate

    async def request_advisory(self, prompt: str) -> AdvisoryCandidate:
        return self.candidate


def _install(
    monkeypatch,
    tmp_path: Path,
    config: Optional[PolicyConfig] = None,
    guard: Optional[AdvisoryGuard] = None,
) -> InventoryService:
    config = config or PolicyConfig()
    inventory = InventoryService(str(tmp_path), today=lambda: TODAY, autoload=False)
    service = RecommendationService(
        resolver=BaselineResolver(inventory, inventory, config, today=lambda: TODAY),
        guard=guard or AdvisoryGuard(client=None),
        config=config,
        inventory_service=inventory,
    )
    monkeypatch.setattr(f"{MODULE}._recommendation_service", service)
    return inventory


def test_explicit_figures(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path)

    response = client.post(
        "/api/v1/replenishment",
        json={
            "sku": "sku-1",
            "on_hand": 500,
            "reserved": 50,
            "configured_reorder_point": 600,
            "forecast_demand": 100,
            "demand_std_dev": 0,
            "lead_time_days": 7,
            "service_level_percent": 95,
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["sku"] == "SKU-1"
    assert payload["daily"] == {
        "safety_stock": 0,
        "reorder_point": 700,
        "recommended_order_quantity": 250,
        "available_stock": 450,
    }
    assert payload["weekly"] is None
    assert payload["recommendation"] is None
    assert payload["calculation"]["recommended_order_quantity"].endswith("= 250")


def test_catalogue_stock_and_weekly_view(monkeypatch, tmp_path):
    inventory = _install(monkeypatch, tmp_path)
    inventory.register_product(
        ProductRecord(sku="SKU-2", on_hand=60, reserved=10, configured_reorder_point=0, lead_time_days=14)
    )
    for day in range(1, 29):
        inventory.record_movement("SKU-2", date(2024, 6, day), 10)

    payload = client.post(
        "/api/v1/replenishment", json={"sku": "SKU-2", "forecast_demand": 10, "demand_std_dev": 0}
    ).json()

    assert payload["daily"]["available_stock"] == 50
    assert payload["daily"]["reorder_point"] == 140
    assert payload["policy"]["lead_time_days"] == 14
    assert payload["weekly"]["lead_time_weeks"] == 2.0
    assert payload["weekly"]["reorder_point_weekly"] is not None
    assert payload["weekly_detail"]["forecast"]["timeline"]


def test_zero_lead_time_marks_weekly_as_not_computable(monkeypatch, tmp_path):
    inventory = _install(monkeypatch, tmp_path)
    inventory.record_movement("SKU-3", TODAY, 70)

    payload = client.post(
        "/api/v1/replenishment",
        json={"sku": "SKU-3", "on_hand": 0, "forecast_demand": 10, "lead_time_days": 0},
    ).json()

    assert payload["weekly"]["reorder_point_weekly"] is None
    assert payload["weekly"]["recommended_order_quantity_weekly"] is None
    assert any("weekly reorder point" in note for note in payload["notes"])


def test_missing_forecast_is_resolved_or_reported(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path)

    payload = client.post("/api/v1/replenishment", json={"sku": "SKU-4", "on_hand": 10}).json()

    assert payload["daily"] is None
    assert payload["recommendation"]["forecast_demand"] is None
    assert "No demand forecast available; replenishment metrics not computed." in payload["notes"]


def test_unknown_sku_without_stock(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path)

    response = client.post("/api/v1/replenishment", json={"sku": "GHOST", "forecast_demand": 5})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "stock_unavailable"


def test_negative_stock_rejected(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path)

    response = client.post("/api/v1/replenishment", json={"sku": "SKU-1", "on_hand": -1})
    assert response.status_code == 422


def test_fifty_percent_service_level_has_zero_safety_stock(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path)

    response = client.post(
        "/api/v1/replenishment",
        json={
            "sku": "SKU-1",
            "service_level_percent": 50,
            "forecast_demand": 100,
            "demand_std_dev": 10,
            "lead_time_days": 7,
            "on_hand": 500,
            "reserved": 50,
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["policy"]["service_level_z"] == 0.0
    assert payload["daily"]["safety_stock"] == 0
    assert payload["daily"]["reorder_point"] == 700
    assert payload["daily"]["recommended_order_quantity"] == 250


def test_advisory_service_level_of_fifty_is_usable(monkeypatch, tmp_path):
    candidate = AdvisoryCandidate(
        forecast_demand=100, demand_std_dev=10, lead_time_days=7, service_level_percent=50
    )
    _install(monkeypatch, tmp_path, guard=AdvisoryGuard(client=FixedAdvisory(candidate)))

    response = client.post(
        "/api/v1/replenishment", json={"sku": "SKU-5", "on_hand": 500, "reserved": 50}
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["recommendation"]["service_level_percent"] == 50.0
    assert payload["recommendation"]["advisory_applied"] is True
    assert payload["daily"]["safety_stock"] == 0
    assert payload["daily"]["reorder_point"] == 700


def test_model_validation_errors_become_bad_request(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path)

    async def rejecting(*args, **kwargs):
        StockState(on_hand=-1)

    monkeypatch.setattr(RecommendationService, "recommend_replenishment", rejecting)

    response = client.post(
        "/api/v1/replenishment", json={"sku": "SKU-1", "on_hand": 10, "forecast_demand": 5}
    )

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_input"


def test_missing_service_level_uses_configured_z(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path, config=PolicyConfig(default_service_level_z=2.0))

    payload = client.post(
        "/api/v1/replenishment",
        json={
            "sku": "SKU-1",
            "on_hand": 0,
            "forecast_demand": 10,
            "demand_std_dev": 10,
            "lead_time_days": 4,
        },
    ).json()

    assert payload["policy"]["service_level_z"] == 2.0
    # 2.0 x 10 x sqrt(4 x 1.25) = 44.72
    assert payload["daily"]["safety_stock"] == 45


def test_failing_weekly_lookups_degrade_to_note(monkeypatch, tmp_path):
    inventory = _install(monkeypatch, tmp_path)
    for day in range(1, 29):
        inventory.record_movement("SKU-6", date(2024, 6, day), 10)

    def broken(*args, **kwargs):
        raise RuntimeError("warehouse database offline")

    monkeypatch.setattr(inventory, "get_weekly_history", broken)
    monkeypatch.setattr(inventory, "get_monthly_totals", broken)

    response = client.post(
        "/api/v1/replenishment",
        json={"sku": "SKU-6", "on_hand": 20, "forecast_demand": 10, "lead_time_days": 7},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["weekly"] is None
    assert payload["weekly_detail"] == {}
    assert payload["daily"]["reorder_point"] == 70 + payload["daily"]["safety_stock"]
    assert "No weekly history available; weekly metrics not computed." in payload["notes"]


def test_slow_weekly_lookup_times_out(monkeypatch, tmp_path):
    inventory = _install(
        monkeypatch, tmp_path, config=PolicyConfig(history_timeout_seconds=0.05)
    )

    def slow(sku: str, days: int) -> List[WeeklyHistoryPoint]:
        time.sleep(0.5)
        return [WeeklyHistoryPoint(week_start="2024-06-24", outbound_quantity=70)]

    monkeypatch.setattr(inventory, "get_weekly_history", slow)

    response = client.post(
        "/api/v1/replenishment",
        json={"sku": "SKU-7", "on_hand": 20, "forecast_demand": 10, "lead_time_days": 7},
    )

    assert response.status_code == 200
    assert response.json()["weekly"] is None
    assert "No weekly history available; weekly metrics not computed." in response.json()["notes"]
