r"""backend\app\services\advisory_service.py

Deviation guard around the optional advisory estimate.

The advisory service (an LLM in production) may suggest demand figures,
a lead time and a service level.  Its demand numbers are only trusted when
they stay within ``threshold`` of the formula baseline; lead time and
service level are clamped and applied whenever they are valid.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from ..core.errors import AdvisoryUnavailableError
from ..models.schemas import AdvisoryCandidate, BaselineEstimate
from . import stats

LOGGER = logging.getLogger(__name__)

MIN_SERVICE_LEVEL_PERCENT = 50.0
MAX_SERVICE_LEVEL_PERCENT = 99.9


class AdvisoryClient(Protocol):
    async def request_advisory(self, prompt: str) -> AdvisoryCandidate: ...


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def relative_deviation(candidate: Optional[float], baseline: Optional[float]) -> Optional[float]:
    """Return ``|candidate - baseline| / |baseline|``.

    ``None`` when either side is missing, ``0.0`` when both are zero and
    ``inf`` when only the baseline is zero.
    """

    if candidate is None or baseline is None:
        return None
    if baseline == 0:
        return 0.0 if candidate == 0 else math.inf
    return abs(candidate - baseline) / abs(baseline)


def clamp_lead_time(value: Optional[float]) -> Optional[int]:
    number = _finite(value)
    if number is None:
        return None
    return stats.non_negative_int(number)


def clamp_service_level(value: Optional[float]) -> Optional[float]:
    """Clamp to ``[50, 99.9]`` with one decimal place."""

    number = _finite(value)
    if number is None:
        return None
    bounded = min(max(number, MIN_SERVICE_LEVEL_PERCENT), MAX_SERVICE_LEVEL_PERCENT)
    return stats.round_half_up(bounded * 10) / 10.0


def _candidate_quantity(value: Optional[float]) -> Optional[int]:
    number = _finite(value)
    if number is None:
        return None
    return stats.non_negative_int(number)


def format_deviation_pct(deviation: float) -> str:
    if math.isinf(deviation):
        return "inf"
    rounded = stats.round_half_up(deviation * 1000) / 10.0
    return f"{rounded:g}"


@dataclass
class GuardOutcome:
    forecast_demand: Optional[int]
    demand_std_dev: Optional[int]
    lead_time_days: int
    service_level_percent: float
    notes: List[str] = field(default_factory=list)
    raw_summary: str = ""
    advisory_applied: bool = False
    deviation_exceeded: bool = False
    max_deviation: Optional[float] = None
    error: Optional[str] = None


class AdvisoryGuard:
    """Decide whether an advisory suggestion may replace the baseline.

    Parameters
    ----------
    client:
        Object exposing ``async request_advisory(prompt)``.  ``None`` disables
        the integration.
    threshold:
        Maximum tolerated relative deviation (``0.15`` = 15 %).
    advisory_enabled:
        ``False`` forces formula-only results; the client is never called.
    timeout:
        Seconds to wait for the advisory answer.
    """

    def __init__(
        self,
        client: Optional[AdvisoryClient] = None,
        threshold: float = 0.15,
        advisory_enabled: bool = True,
        timeout: float = 20.0,
    ) -> None:
        self.client = client
        self.threshold = float(threshold)
        self.advisory_enabled = advisory_enabled
        self.timeout = timeout

    # ------------------------------------------------------------------
    async def _fetch(self, prompt: str) -> AdvisoryCandidate:
        if self.client is None:
            raise AdvisoryUnavailableError("advisory client not configured", reason="disabled")
        try:
            return await asyncio.wait_for(self.client.request_advisory(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise AdvisoryUnavailableError(
                f"advisory timed out after {self.timeout:g}s", reason="timeout"
            ) from exc

    # ------------------------------------------------------------------
    async def evaluate(
        self,
        baseline: Optional[BaselineEstimate],
        fallback_lead_time: int,
        fallback_service_level: float,
        prompt: str,
    ) -> GuardOutcome:
        outcome = GuardOutcome(
            forecast_demand=baseline.forecast_demand if baseline else None,
            demand_std_dev=baseline.demand_std_dev if baseline else None,
            lead_time_days=fallback_lead_time,
            service_level_percent=fallback_service_level,
            raw_summary=baseline.summary() if baseline else "Baseline recommendation",
        )

        if not self.advisory_enabled:
            outcome.notes.append("Strict formula mode is active; returning formula values only.")
            return outcome
        if self.client is None:
            outcome.notes.append("Advisory integration disabled; returning formula values only.")
            return outcome

        try:
            candidate = await self._fetch(prompt)
        except AdvisoryUnavailableError as exc:
            message = str(exc).strip() or "advisory call failed"
            LOGGER.warning("Advisory call failed (%s): %s", exc.reason, message)
            outcome.error = message
            outcome.notes.append(f"Advisory call failed; fell back to the baseline ({message}).")
            return outcome
        except Exception as exc:
            message = str(exc).strip() or exc.__class__.__name__
            LOGGER.exception("Unexpected advisory failure")
            outcome.error = message
            outcome.notes.append(f"Advisory call failed; fell back to the baseline ({message}).")
            return outcome

        self._apply(candidate, baseline, outcome)
        return outcome

    # ------------------------------------------------------------------
    def _apply(
        self,
        candidate: AdvisoryCandidate,
        baseline: Optional[BaselineEstimate],
        outcome: GuardOutcome,
    ) -> None:
        candidate_forecast = _candidate_quantity(candidate.forecast_demand)
        candidate_std = _candidate_quantity(candidate.demand_std_dev)

        lead_time = clamp_lead_time(candidate.lead_time_days)
        if lead_time is not None:
            outcome.lead_time_days = lead_time
        service_level = clamp_service_level(candidate.service_level_percent)
        if service_level is not None:
            outcome.service_level_percent = service_level

        if baseline is not None:
            deviations = [
                value
                for value in (
                    relative_deviation(candidate_forecast, baseline.forecast_demand),
                    relative_deviation(candidate_std, baseline.demand_std_dev),
                )
                if value is not None
            ]
            outcome.max_deviation = max(deviations) if deviations else None
            if outcome.max_deviation is not None and outcome.max_deviation > self.threshold:
                outcome.deviation_exceeded = True
                outcome.notes.append(
                    "Advisory suggestion deviated "
                    f"{format_deviation_pct(outcome.max_deviation)}% from the formula baseline; "
                    "kept the baseline."
                )
                LOGGER.info(
                    "Rejected advisory demand: deviation %.3f exceeds %.3f",
                    outcome.max_deviation,
                    self.threshold,
                )
                return

        if candidate_forecast is not None:
            outcome.forecast_demand = candidate_forecast
        if candidate_std is not None:
            outcome.demand_std_dev = candidate_std
        outcome.advisory_applied = True
        outcome.raw_summary = candidate.summary.strip() or "Advisory recommendation"
        outcome.notes.extend(note for note in candidate.notes if note and note.strip())
