"""
Application configuration utilities.

This module defines the ``Settings`` class used throughout the service for
environment variables, the ``PolicyConfig`` structure carrying the demand
baseline constants, and helper functions to load the YAML files containing
business rules and thresholds.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, Mapping

import yaml
from pydantic_settings import BaseSettings


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) and value >= 0 else None


def _env_float(name: str, default: float) -> float:
    value = _env_optional_float(name)
    return default if value is None else value


class Settings(BaseSettings):
    """Configuration loaded from environment variables or a .env file."""

    # API server configuration
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Directories holding YAML rules and the movement/product datasets
    config_dir: str = os.getenv("CONFIG_DIR", "configs")
    data_dir: str = os.getenv("DATA_DIR", "data")

    # GEMINI API key (optional; required for advisory suggestions)
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
    advisory_timeout_seconds: float = _env_float("ADVISORY_TIMEOUT_SECONDS", 20.0)

    # When true the advisory service is never consulted
    strict_forecast_formula: bool = _env_flag("STRICT_FORECAST_FORMULA")
    # Overrides thresholds.yaml when set
    max_deviation_pct: float | None = _env_optional_float("FORECAST_RECOMMEND_MAX_DEVIATION_PCT")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """Return a cached instance of ``Settings``.

    Using a cache ensures that environment variables are only read once.
    """
    return Settings()


def load_yaml(file_path: str) -> dict:
    """Load a YAML file from the given path and return its contents.

    If the file does not exist, an empty dictionary is returned.
    """
    if not os.path.exists(file_path):
        return {}
    with open(file_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


@dataclass(frozen=True)
class PolicyConfig:
    """Constants that drive the baseline cascade and replenishment maths.

    Attributes
    ----------
    smoothing_alpha:
        Fixed EWMA weight applied to daily outbound history and stamped on
        every policy draft.
    correlation_rho:
        Fixed demand autocorrelation used to inflate the lead-time variance
        in the safety-stock formula.  Must lie in ``[0, 1)``.
    monthly_window / min_monthly_window:
        Most recent months used by the monthly formula and the minimum number
        of distinct months it requires.
    ewma_days:
        Length of the daily window for the EWMA strategy.
    peer_std_ratio:
        Fallback spread as a fraction of the mean when no std dev is known.
    default_service_level_z:
        Z used when a replenishment request carries no service level at all.
    """

    smoothing_alpha: float = 0.4
    correlation_rho: float = 0.25
    monthly_window: int = 3
    min_monthly_window: int = 2
    monthly_lookback_months: int = 6
    ewma_days: int = 90
    peer_std_ratio: float = 0.35
    default_lead_time_days: int = 14
    default_service_level_percent: float = 95.0
    default_service_level_z: float = 1.6449
    max_deviation_pct: float = 0.15
    history_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.correlation_rho < 1.0:
            raise ValueError("correlation_rho must lie in [0, 1)")
        if self.min_monthly_window < 1 or self.monthly_window < self.min_monthly_window:
            raise ValueError("monthly_window must be >= min_monthly_window >= 1")
        if self.ewma_days <= 0:
            raise ValueError("ewma_days must be a positive integer")

    def with_overrides(self, **changes: Any) -> "PolicyConfig":
        return replace(self, **changes)

    @classmethod
    def from_mappings(
        cls,
        settings: Mapping[str, Any] | None = None,
        thresholds: Mapping[str, Any] | None = None,
    ) -> "PolicyConfig":
        """Build a config from the ``settings.yaml`` / ``thresholds.yaml`` payloads."""

        settings = settings or {}
        thresholds = thresholds or {}
        defaults = cls()

        def pick(source: Mapping[str, Any], key: str, default: Any, cast: type) -> Any:
            value = source.get(key)
            if value is None:
                return default
            try:
                return cast(value)
            except (TypeError, ValueError):
                return default

        return cls(
            smoothing_alpha=pick(settings, "smoothing_alpha", defaults.smoothing_alpha, float),
            correlation_rho=pick(settings, "correlation_rho", defaults.correlation_rho, float),
            monthly_window=pick(settings, "monthly_window", defaults.monthly_window, int),
            min_monthly_window=pick(settings, "min_monthly_window", defaults.min_monthly_window, int),
            monthly_lookback_months=pick(
                settings, "monthly_lookback_months", defaults.monthly_lookback_months, int
            ),
            ewma_days=pick(settings, "ewma_days", defaults.ewma_days, int),
            peer_std_ratio=pick(settings, "peer_std_ratio", defaults.peer_std_ratio, float),
            default_lead_time_days=pick(settings, "lead_time_days", defaults.default_lead_time_days, int),
            default_service_level_percent=pick(
                settings,
                "service_level_percent",
                defaults.default_service_level_percent,
                float,
            ),
            default_service_level_z=pick(
                settings, "service_level_z", defaults.default_service_level_z, float
            ),
            max_deviation_pct=pick(thresholds, "max_deviation_pct", defaults.max_deviation_pct, float),
            history_timeout_seconds=pick(
                settings, "history_timeout_seconds", defaults.history_timeout_seconds, float
            ),
        )

    @classmethod
    def from_config_dir(
        cls, config_root: str | None = None, settings: Settings | None = None
    ) -> "PolicyConfig":
        """Load both YAML files, then apply the environment overrides in ``settings``."""

        settings = settings or get_settings()
        root = config_root or settings.config_dir
        config = cls.from_mappings(
            load_yaml(os.path.join(root, "settings.yaml")),
            load_yaml(os.path.join(root, "thresholds.yaml")),
        )
        if settings.max_deviation_pct is not None:
            config = config.with_overrides(max_deviation_pct=settings.max_deviation_pct)
        return config
