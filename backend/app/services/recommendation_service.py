r"""backend\app\services\recommendation_service.py

Assemble the final demand recommendation for a SKU.

The flow is: baseline cascade -> advisory guard -> notes de-duplication ->
one structured log record.  :meth:`RecommendationService.resolve_recommendation`
never raises; every failure is reported as a note on the result.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..core.config import PolicyConfig, get_settings
from ..core.errors import InsufficientDataError, ValidationError
from ..models.schemas import (
    DemandMetrics,
    HistoryPoint,
    RecommendationResult,
    ReplenishmentMetrics,
    ReplenishmentPolicy,
    StockState,
    WeeklyReplenishmentMetrics,
)
from . import llm_service, stats
from .advisory_service import AdvisoryGuard, clamp_lead_time, clamp_service_level
from .baseline_service import BaselineResolution, BaselineResolver
from .inventory_service import InventoryService
from .policy_service import PolicyService
from .replenishment_service import (
    compute_replenishment,
    compute_weekly_replenishment,
    describe_replenishment,
    z_for_service_level,
)
from .weekly_forecast_service import (
    build_weekly_forecast,
    summarize_weekly_demand,
    weekly_history_from_monthly,
)

LOGGER = logging.getLogger(__name__)

WEEKLY_HISTORY_DAYS = 8 * 7 * 2


def unique_notes(notes: Iterable[str]) -> List[str]:
    """Drop blank notes and duplicates, keeping first-seen order."""

    seen: Dict[str, None] = {}
    for note in notes:
        if isinstance(note, str) and note.strip():
            seen.setdefault(note.strip(), None)
    return list(seen)


class RecommendationService:
    """Glue between the baseline resolver, advisory guard and replenishment maths."""

    def __init__(
        self,
        resolver: Optional[BaselineResolver] = None,
        guard: Optional[AdvisoryGuard] = None,
        config: Optional[PolicyConfig] = None,
        inventory_service: Optional[InventoryService] = None,
        policy_service: Optional[PolicyService] = None,
    ) -> None:
        settings = get_settings()
        self.config = config or PolicyConfig.from_config_dir()
        self.inventory_service = inventory_service or InventoryService(settings.data_dir)
        self.resolver = resolver or BaselineResolver(
            self.inventory_service, self.inventory_service, self.config
        )
        if guard is None:
            client = llm_service.GeminiAdvisoryClient()
            guard = AdvisoryGuard(
                client=client if client.configured else None,
                threshold=self.config.max_deviation_pct,
                advisory_enabled=not settings.strict_forecast_formula,
                timeout=settings.advisory_timeout_seconds,
            )
        self.guard = guard
        self.policy_service = policy_service

    # ------------------------------------------------------------------
    def _fallback_lead_time(self, metrics: Optional[DemandMetrics]) -> int:
        value = clamp_lead_time(metrics.lead_time_days) if metrics else None
        return self.config.default_lead_time_days if value is None else value

    def _fallback_service_level(self, metrics: Optional[DemandMetrics]) -> float:
        value = clamp_service_level(metrics.service_level_percent) if metrics else None
        return self.config.default_service_level_percent if value is None else value

    # ------------------------------------------------------------------
    async def resolve_recommendation(
        self,
        sku: Optional[str],
        history: Optional[Iterable[HistoryPoint]] = None,
        metrics: Optional[DemandMetrics] = None,
        category: Optional[str] = None,
        name: Optional[str] = None,
    ) -> RecommendationResult:
        history_list = list(history or [])
        normalized_sku = (sku or "").strip().upper() or None
        fallback_lead_time = self._fallback_lead_time(metrics)
        fallback_service_level = self._fallback_service_level(metrics)

        try:
            resolution = await self.resolver.resolve(normalized_sku, history_list, metrics, category)
        except Exception as exc:
            LOGGER.exception("Baseline resolution failed for %s", normalized_sku)
            resolution = BaselineResolution(
                baseline=None, notes=[f"Baseline calculation failed ({exc.__class__.__name__})."]
            )
        baseline = resolution.baseline

        prompt = llm_service.build_forecast_prompt(
            normalized_sku,
            name=name,
            category=category,
            metrics=metrics,
            history=history_list,
            baseline=baseline,
        )
        outcome = await self.guard.evaluate(
            baseline, fallback_lead_time, fallback_service_level, prompt
        )

        result = RecommendationResult(
            sku=normalized_sku,
            forecast_demand=outcome.forecast_demand,
            demand_std_dev=outcome.demand_std_dev,
            lead_time_days=outcome.lead_time_days,
            service_level_percent=outcome.service_level_percent,
            notes=unique_notes([*resolution.notes, *outcome.notes]),
            raw_summary=outcome.raw_summary,
            method=baseline.method if baseline else None,
            advisory_applied=outcome.advisory_applied,
            baseline=baseline,
        )

        LOGGER.info(
            "Forecast recommendation resolved %s",
            json.dumps(
                {
                    "sku": normalized_sku,
                    "strict": not self.guard.advisory_enabled,
                    "advisory_applied": outcome.advisory_applied,
                    "deviation_exceeded": outcome.deviation_exceeded,
                    "baseline": baseline.model_dump(exclude={"raw_daily_values"}) if baseline else None,
                    "result": {
                        "forecast_demand": result.forecast_demand,
                        "demand_std_dev": result.demand_std_dev,
                        "lead_time_days": result.lead_time_days,
                        "service_level_percent": result.service_level_percent,
                    },
                    "advisory_error": outcome.error,
                }
            ),
        )

        if self.policy_service is not None and normalized_sku:
            try:
                await asyncio.to_thread(
                    self.policy_service.ensure_policy_draft, normalized_sku, name, result
                )
            except (OSError, ValidationError) as exc:
                LOGGER.warning("Unable to persist policy draft for %s: %s", normalized_sku, exc)
        return result

    # ------------------------------------------------------------------
    async def _lookup(self, label: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking history lookup; ``None`` when it times out or fails."""

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.config.history_timeout_seconds
            )
        except asyncio.TimeoutError:
            LOGGER.warning("%s lookup for %s timed out; treating as empty", label, args[0])
        except Exception:
            LOGGER.exception("%s lookup for %s failed; treating as empty", label, args[0])
        return None

    async def weekly_metrics(
        self,
        sku: str,
        lead_time_days: float,
        service_level_z: float,
        available: int,
    ) -> tuple[Optional[WeeklyReplenishmentMetrics], Dict[str, Any]]:
        """Weekly reorder metrics plus the weekly forecast for ``sku``.

        Returns ``(None, {})`` when neither weekly nor monthly history can be
        read.
        """

        weekly = await self._lookup(
            "Weekly history", self.inventory_service.get_weekly_history, sku, WEEKLY_HISTORY_DAYS
        )
        if not weekly:
            monthly = await self._lookup(
                "Monthly totals",
                self.inventory_service.get_monthly_totals,
                sku,
                self.config.monthly_lookback_months,
            )
            weekly = weekly_history_from_monthly(monthly or {})
        if not weekly:
            return None, {}

        summary = summarize_weekly_demand(weekly)
        forecast = build_weekly_forecast(weekly)
        metrics = compute_weekly_replenishment(summary, lead_time_days, service_level_z, available)
        return metrics, {
            "summary": summary.model_dump(),
            "forecast": forecast.model_dump(),
        }

    async def recommend_replenishment(
        self,
        sku: str,
        stock: StockState,
        *,
        forecast_demand: Optional[float] = None,
        demand_std_dev: Optional[float] = None,
        lead_time_days: Optional[float] = None,
        service_level_percent: Optional[float] = None,
        configured_reorder_point: float = 0.0,
        metrics: Optional[DemandMetrics] = None,
    ) -> Dict[str, Any]:
        """Daily and weekly replenishment view for one SKU.

        Missing demand figures are resolved through :meth:`resolve_recommendation`.
        """

        notes: List[str] = []
        recommendation: Optional[RecommendationResult] = None
        if forecast_demand is None:
            recommendation = await self.resolve_recommendation(sku, metrics=metrics)
            notes.extend(recommendation.notes)
            forecast_demand = recommendation.forecast_demand
            if demand_std_dev is None:
                demand_std_dev = recommendation.demand_std_dev
            if lead_time_days is None:
                lead_time_days = recommendation.lead_time_days
            if service_level_percent is None:
                service_level_percent = recommendation.service_level_percent

        lead_time = self.config.default_lead_time_days if lead_time_days is None else lead_time_days
        if service_level_percent is None:
            service_level = self.config.default_service_level_percent
            service_level_z = self.config.default_service_level_z
        else:
            service_level = clamp_service_level(service_level_percent)
            service_level_z = z_for_service_level(service_level)
        policy = ReplenishmentPolicy(
            lead_time_days=lead_time,
            service_level_z=service_level_z,
            correlation_rho=self.config.correlation_rho,
            configured_reorder_point=configured_reorder_point,
        )

        daily: Optional[ReplenishmentMetrics] = None
        calculation: Dict[str, str] = {}
        estimate = RecommendationResult(
            forecast_demand=None if forecast_demand is None else stats.non_negative_int(forecast_demand),
            demand_std_dev=None if demand_std_dev is None else stats.non_negative_int(demand_std_dev),
            lead_time_days=stats.non_negative_int(lead_time),
            service_level_percent=service_level,
        )
        try:
            daily = compute_replenishment(estimate, policy, stock)
            calculation = describe_replenishment(
                float(estimate.forecast_demand or 0), float(estimate.demand_std_dev or 0), policy, daily
            )
        except InsufficientDataError as exc:
            LOGGER.info("Replenishment for %s skipped: %s", sku, exc)
            notes.append("No demand forecast available; replenishment metrics not computed.")

        available = daily.available_stock if daily else stats.non_negative_int(max(stock.on_hand - stock.reserved, 0.0))
        weekly, weekly_detail = await self.weekly_metrics(
            sku, lead_time, policy.service_level_z, available
        )
        if weekly is None:
            notes.append("No weekly history available; weekly metrics not computed.")
        elif weekly.reorder_point_weekly is None:
            notes.append("Lead time is zero; the weekly reorder point is not computable.")

        return {
            "sku": sku,
            "policy": policy.model_dump(),
            "daily": daily.model_dump() if daily else None,
            "weekly": weekly.model_dump() if weekly else None,
            "weekly_detail": weekly_detail,
            "calculation": calculation,
            "recommendation": recommendation.model_dump() if recommendation else None,
            "notes": unique_notes(notes),
        }

