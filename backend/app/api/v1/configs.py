"""API endpoints for reading and updating the policy YAML files."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from typing import Any, Dict, Optional

import yaml
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from ...core.config import PolicyConfig, get_settings

LOGGER = logging.getLogger(__name__)

router = APIRouter()

CONFIG_DIR = get_settings().config_dir
SETTINGS_PATH = os.path.join(CONFIG_DIR, "settings.yaml")
THRESHOLDS_PATH = os.path.join(CONFIG_DIR, "thresholds.yaml")


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _safe_write_yaml(path: str, payload: Dict[str, Any]) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".yaml", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)
        shutil.move(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


class SettingsUpdate(BaseModel):
    lead_time_days: Optional[int] = Field(None, ge=0, le=365)
    service_level_percent: Optional[float] = Field(None, ge=50.0, le=99.9)
    service_level_z: Optional[float] = Field(None, gt=0.0, le=5.0)
    smoothing_alpha: Optional[float] = Field(None, gt=0.0, le=1.0)
    correlation_rho: Optional[float] = Field(None, ge=0.0, lt=1.0)
    monthly_window: Optional[int] = Field(None, ge=1, le=24)
    min_monthly_window: Optional[int] = Field(None, ge=1, le=24)
    monthly_lookback_months: Optional[int] = Field(None, ge=1, le=36)
    ewma_days: Optional[int] = Field(None, ge=7, le=730)
    peer_std_ratio: Optional[float] = Field(None, ge=0.0, le=5.0)
    history_timeout_seconds: Optional[float] = Field(None, gt=0.0, le=120.0)

    @model_validator(mode="after")
    def _check_windows(self) -> "SettingsUpdate":
        if (
            self.monthly_window is not None
            and self.min_monthly_window is not None
            and self.min_monthly_window > self.monthly_window
        ):
            raise ValueError("min_monthly_window must not exceed monthly_window")
        return self


class ThresholdsUpdate(BaseModel):
    max_deviation_pct: Optional[float] = Field(None, ge=0.0, le=10.0)


def _merge_updates(original: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    result = original.copy()
    result.update({k: v for k, v in updates.items() if v is not None})
    return result


def _read_or_404(path: str, label: str) -> Dict[str, Any]:
    try:
        return _load_yaml(path)
    except FileNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": f"{label} not found"},
        ) from exc


def _write(
    path: str,
    current: Dict[str, Any],
    updates: Dict[str, Any],
    other: Dict[str, Any],
    is_settings: bool,
) -> Dict[str, Any]:
    updated = _merge_updates(current, updates)
    if updated == current:
        return current

    # the merged file must still produce a usable policy
    try:
        if is_settings:
            PolicyConfig.from_mappings(updated, other)
        else:
            PolicyConfig.from_mappings(other, updated)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_config", "message": str(exc)},
        ) from exc

    try:
        _safe_write_yaml(path, updated)
    except OSError as exc:
        LOGGER.exception("Failed to write configuration file at %s", path)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "write_failed", "message": str(exc)},
        ) from exc
    LOGGER.info("Updated %s: %s", path, sorted(updates))
    return updated


def _load_optional(path: str) -> Dict[str, Any]:
    try:
        return _load_yaml(path)
    except FileNotFoundError:
        return {}


@router.get("/configs/settings")
def get_settings_file() -> Dict[str, Any]:
    return _read_or_404(SETTINGS_PATH, "settings.yaml")


@router.put("/configs/settings")
def put_settings(body: SettingsUpdate) -> Dict[str, Any]:
    return _write(
        SETTINGS_PATH,
        _load_optional(SETTINGS_PATH),
        body.model_dump(exclude_none=True),
        _load_optional(THRESHOLDS_PATH),
        is_settings=True,
    )


@router.get("/configs/thresholds")
def get_thresholds() -> Dict[str, Any]:
    return _read_or_404(THRESHOLDS_PATH, "thresholds.yaml")


@router.put("/configs/thresholds")
def put_thresholds(body: ThresholdsUpdate) -> Dict[str, Any]:
    return _write(
        THRESHOLDS_PATH,
        _load_optional(THRESHOLDS_PATH),
        body.model_dump(exclude_none=True),
        _load_optional(SETTINGS_PATH),
        is_settings=False,
    )
