r"""backend/tests/test_recommendations_api.py"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.app.core.config import PolicyConfig  # noqa: E402
from backend.app.main import app  # noqa: E402
from backend.app.models.schemas import AdvisoryCandidate  # noqa: E402
from backend.app.services.advisory_service import AdvisoryGuard  # noqa: E402
from backend.app.services.baseline_service import BaselineResolver  # noqa: E402
from backend.app.services.inventory_service import InventoryService  # noqa: E402
from backend.app.services.policy_service import PolicyService  # noqa: E402
from backend.app.services.recommendation_service import RecommendationService  # noqa: E402

client = TestClient(app)

MODULE = "backend.app.api.v1.recommendations"

HISTORY = [
    {"month": "2024-11", "actual": 3000},
    {"month": "2024-12", "actual": 3100},
    {"month": "2025-01", "actual": 2900},
]


class FixedAdvisory:
    def __init__(self, candidate: AdvisoryCandidate) -> None:
        self.candidate = candidate
        self.calls = 0

    async def request_advisory(self, prompt: str) -> AdvisoryCandidate:
        self.calls += 1
        return self.candidate


def _install(monkeypatch, tmp_path: Path, guard: AdvisoryGuard) -> RecommendationService:
    config = PolicyConfig()
    inventory = InventoryService(str(tmp_path), autoload=False)
    service = RecommendationService(
        resolver=BaselineResolver(inventory, inventory, config),
        guard=guard,
        config=config,
        inventory_service=inventory,
        policy_service=PolicyService(str(tmp_path / "policies.json"), config),
    )
    monkeypatch.setattr(f"{MODULE}._recommendation_service", service)
    return service


def test_three_month_history_without_advisory(monkeypatch, tmp_path):
    service = _install(monkeypatch, tmp_path, AdvisoryGuard(client=None))

    response = client.post(
        "/api/v1/recommendations/forecast",
        json={"product": {"sku": "sku-1", "name": "Widget"}, "history": HISTORY},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["sku"] == "SKU-1"
    assert payload["forecast_demand"] == 98
    assert payload["demand_std_dev"] == 3
    assert payload["method"] == "formula-monthly"
    assert payload["lead_time_days"] == 14
    assert payload["service_level_percent"] == 95.0
    assert payload["advisory_applied"] is False
    assert len(payload["notes"]) == len(set(payload["notes"]))
    assert any(note.startswith("Advisory integration disabled") for note in payload["notes"])

    draft = service.policy_service.get_draft("SKU-1")
    assert draft is not None
    assert draft.forecast_demand == 98


def test_deviating_advisory_keeps_baseline(monkeypatch, tmp_path):
    advisory = FixedAdvisory(AdvisoryCandidate(forecast_demand=130, demand_std_dev=3, lead_time_days=10))
    _install(monkeypatch, tmp_path, AdvisoryGuard(client=advisory, threshold=0.15))

    response = client.post(
        "/api/v1/recommendations/forecast",
        json={"product": {"sku": "SKU-1"}, "history": HISTORY},
    )

    payload = response.json()
    assert advisory.calls == 1
    assert payload["forecast_demand"] == 98
    assert payload["lead_time_days"] == 10
    assert any("from the formula baseline" in note for note in payload["notes"])


def test_strict_mode_returns_formula_only(monkeypatch, tmp_path):
    advisory = FixedAdvisory(AdvisoryCandidate(forecast_demand=99))
    _install(monkeypatch, tmp_path, AdvisoryGuard(client=advisory, advisory_enabled=False))

    payload = client.post(
        "/api/v1/recommendations/forecast",
        json={"product": {"sku": "SKU-1"}, "history": HISTORY},
    ).json()

    assert advisory.calls == 0
    assert payload["forecast_demand"] == 98
    assert "Strict formula mode is active; returning formula values only." in payload["notes"]


def test_no_data_returns_null_forecast_with_note(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path, AdvisoryGuard(client=None))

    response = client.post("/api/v1/recommendations/forecast", json={"product": {"sku": "NEW-1"}})

    assert response.status_code == 200
    payload = response.json()
    assert payload["forecast_demand"] is None
    assert payload["demand_std_dev"] is None
    assert payload["method"] is None
    assert any("Insufficient outbound data" in note for note in payload["notes"])


def test_metrics_fallback_and_lead_time_from_metrics(monkeypatch, tmp_path):
    _install(monkeypatch, tmp_path, AdvisoryGuard(client=None))

    payload = client.post(
        "/api/v1/recommendations/forecast",
        json={
            "product": {"sku": "SKU-9"},
            "metrics": {"daily_avg": 20, "daily_std": 4, "lead_time_days": 5, "service_level_percent": 40},
        },
    ).json()

    assert (payload["forecast_demand"], payload["demand_std_dev"]) == (20, 4)
    assert payload["method"] == "metrics-fallback"
    assert payload["lead_time_days"] == 5
    assert payload["service_level_percent"] == 50.0


@pytest.mark.parametrize("actual", [-1, "NaN"])
def test_invalid_history_rejected(monkeypatch, tmp_path, actual):
    _install(monkeypatch, tmp_path, AdvisoryGuard(client=None))

    response = client.post(
        "/api/v1/recommendations/forecast",
        json={"product": {"sku": "SKU-1"}, "history": [{"month": "2024-01", "actual": actual}]},
    )
    assert response.status_code == 422
