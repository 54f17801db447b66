from __future__ import annotations

import sys
from pathlib import Path

import yaml

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.app.core.config import PolicyConfig, Settings, _env_optional_float
from backend.app.services.inventory_service import InventoryService
from backend.app.services.recommendation_service import RecommendationService


def _write_configs(root: Path) -> None:
    (root / "settings.yaml").write_text(
        yaml.safe_dump({"service_level_z": 1.2816, "lead_time_days": 10}), encoding="utf-8"
    )
    (root / "thresholds.yaml").write_text(
        yaml.safe_dump({"max_deviation_pct": 0.2}), encoding="utf-8"
    )


def test_thresholds_file_sets_deviation_limit(tmp_path: Path) -> None:
    _write_configs(tmp_path)

    config = PolicyConfig.from_config_dir(str(tmp_path), settings=Settings(max_deviation_pct=None))

    assert config.max_deviation_pct == 0.2
    assert config.default_service_level_z == 1.2816
    assert config.default_lead_time_days == 10


def test_environment_deviation_limit_overrides_thresholds_file(tmp_path: Path) -> None:
    _write_configs(tmp_path)

    config = PolicyConfig.from_config_dir(str(tmp_path), settings=Settings(max_deviation_pct=0.4))

    assert config.max_deviation_pct == 0.4


def test_optional_env_float_ignores_blank_and_invalid(monkeypatch) -> None:
    name = "FORECAST_RECOMMEND_MAX_DEVIATION_PCT"
    monkeypatch.delenv(name, raising=False)
    assert _env_optional_float(name) is None

    monkeypatch.setenv(name, "0.3")
    assert _env_optional_float(name) == 0.3

    for raw in ("abc", "-1", "nan", "inf"):
        monkeypatch.setenv(name, raw)
        assert _env_optional_float(name) is None


def test_recommendation_guard_takes_configured_threshold(tmp_path: Path) -> None:
    service = RecommendationService(
        config=PolicyConfig(max_deviation_pct=0.3),
        inventory_service=InventoryService(str(tmp_path), autoload=False),
    )

    assert service.guard.threshold == 0.3
