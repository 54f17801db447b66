r"""backend/tests/test_policies_api.py"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.app.main import app  # noqa: E402
from backend.app.models.schemas import ProductRecord  # noqa: E402
from backend.app.services.inventory_service import InventoryService  # noqa: E402
from backend.app.services.policy_service import PolicyService  # noqa: E402

client = TestClient(app)

MODULE = "backend.app.api.v1.policies"


@pytest.fixture()
def services(monkeypatch, tmp_path):
    inventory = InventoryService(str(tmp_path), autoload=False)
    policies = PolicyService(str(tmp_path / "policies.json"))
    monkeypatch.setattr(f"{MODULE}._inventory_service", inventory)
    monkeypatch.setattr(f"{MODULE}._policy_service", policies)
    return inventory, policies


def test_put_normalises_sku_and_camel_case(services):
    response = client.put("/api/v1/policies/sku-9", json={"leadTimeDays": 5.4, "serviceLevelPercent": 30})

    assert response.status_code == 200
    payload = response.json()
    assert payload["sku"] == "SKU-9"
    assert payload["lead_time_days"] == 5
    assert payload["service_level_percent"] == 50.0
    assert payload["smoothing_alpha"] == 0.4


def test_bulk_save_and_prune(services):
    inventory, _ = services
    saved = client.post("/api/v1/policies/bulk-save", json={"items": [{"sku": "A"}, {"sku": "B"}]})
    assert saved.status_code == 200

    # empty catalogue: nothing is pruned
    assert [d["sku"] for d in client.get("/api/v1/policies").json()] == ["A", "B"]

    inventory.register_product(ProductRecord(sku="A"))
    assert [d["sku"] for d in client.get("/api/v1/policies").json()] == ["A"]


def test_bulk_save_without_valid_sku(services):
    response = client.post("/api/v1/policies/bulk-save", json={"items": [{"name": "x"}]})
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_items"
