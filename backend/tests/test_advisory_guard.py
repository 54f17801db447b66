from __future__ import annotations

import asyncio
import math
import sys
from pathlib import Path
from typing import List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.app.core.errors import AdvisoryUnavailableError
from backend.app.models.schemas import AdvisoryCandidate, BaselineEstimate
from backend.app.services.advisory_service import (
    AdvisoryGuard,
    clamp_lead_time,
    clamp_service_level,
    relative_deviation,
)


class RecordingClient:
    def __init__(self, candidate: Optional[AdvisoryCandidate] = None, error: Optional[Exception] = None):
        self.candidate = candidate
        self.error = error
        self.prompts: List[str] = []

    async def request_advisory(self, prompt: str) -> AdvisoryCandidate:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        assert self.candidate is not None
        return self.candidate


def _baseline(forecast: int = 100, std: int = 10) -> BaselineEstimate:
    return BaselineEstimate(forecast_demand=forecast, demand_std_dev=std, method="formula-monthly")


def _evaluate(guard: AdvisoryGuard, baseline: Optional[BaselineEstimate]):
    return asyncio.run(guard.evaluate(baseline, 14, 95.0, "prompt"))


def test_relative_deviation_edges() -> None:
    assert relative_deviation(None, 10) is None
    assert relative_deviation(10, None) is None
    assert relative_deviation(0, 0) == 0.0
    assert math.isinf(relative_deviation(5, 0))
    assert relative_deviation(130, 100) == pytest.approx(0.3)


def test_clamps() -> None:
    assert clamp_lead_time(6.5) == 7
    assert clamp_lead_time(-3) == 0
    assert clamp_lead_time(math.nan) is None
    assert clamp_service_level(30) == 50.0
    assert clamp_service_level(100) == 99.9
    assert clamp_service_level(97.25) == 97.3


def test_candidate_within_threshold_is_applied() -> None:
    client = RecordingClient(
        AdvisoryCandidate(
            forecast_demand=110,
            demand_std_dev=11,
            lead_time_days=10,
            service_level_percent=97,
            notes=["Seasonal uplift expected."],
            summary="Slight uplift",
        )
    )
    outcome = _evaluate(AdvisoryGuard(client=client, threshold=0.15), _baseline())

    assert outcome.advisory_applied is True
    assert (outcome.forecast_demand, outcome.demand_std_dev) == (110, 11)
    assert (outcome.lead_time_days, outcome.service_level_percent) == (10, 97.0)
    assert outcome.raw_summary == "Slight uplift"
    assert "Seasonal uplift expected." in outcome.notes
    assert client.prompts == ["prompt"]


def test_candidate_beyond_threshold_keeps_baseline_but_takes_lead_time() -> None:
    client = RecordingClient(
        AdvisoryCandidate(forecast_demand=130, demand_std_dev=10, lead_time_days=21, service_level_percent=120)
    )
    outcome = _evaluate(AdvisoryGuard(client=client, threshold=0.15), _baseline())

    assert outcome.advisory_applied is False
    assert outcome.deviation_exceeded is True
    assert (outcome.forecast_demand, outcome.demand_std_dev) == (100, 10)
    assert outcome.lead_time_days == 21
    assert outcome.service_level_percent == 99.9
    assert any("30%" in note for note in outcome.notes)


def test_zero_baseline_with_positive_candidate_is_rejected() -> None:
    client = RecordingClient(AdvisoryCandidate(forecast_demand=5, demand_std_dev=0))
    outcome = _evaluate(AdvisoryGuard(client=client), _baseline(0, 0))

    assert outcome.deviation_exceeded is True
    assert outcome.forecast_demand == 0


def test_missing_baseline_accepts_candidate() -> None:
    client = RecordingClient(AdvisoryCandidate(forecast_demand=42, demand_std_dev=7))
    outcome = _evaluate(AdvisoryGuard(client=client), None)

    assert outcome.advisory_applied is True
    assert outcome.forecast_demand == 42


def test_strict_mode_never_calls_client() -> None:
    client = RecordingClient(AdvisoryCandidate(forecast_demand=999))
    outcome = _evaluate(AdvisoryGuard(client=client, advisory_enabled=False), _baseline())

    assert client.prompts == []
    assert outcome.forecast_demand == 100
    assert outcome.notes == ["Strict formula mode is active; returning formula values only."]


def test_no_client_returns_baseline_with_note() -> None:
    outcome = _evaluate(AdvisoryGuard(client=None), _baseline())
    assert outcome.forecast_demand == 100
    assert outcome.notes[0].startswith("Advisory integration disabled")


def test_advisory_failure_falls_back_to_baseline() -> None:
    client = RecordingClient(error=AdvisoryUnavailableError("quota exhausted", status=429, reason="throttled"))
    outcome = _evaluate(AdvisoryGuard(client=client), _baseline())

    assert outcome.forecast_demand == 100
    assert outcome.error == "quota exhausted"
    assert outcome.notes == ["Advisory call failed; fell back to the baseline (quota exhausted)."]


def test_advisory_timeout_is_reported() -> None:
    class SlowClient:
        async def request_advisory(self, prompt: str) -> AdvisoryCandidate:
            await asyncio.sleep(1)
            return AdvisoryCandidate(forecast_demand=1)

    outcome = _evaluate(AdvisoryGuard(client=SlowClient(), timeout=0.01), _baseline())

    assert outcome.advisory_applied is False
    assert outcome.error is not None and "timed out" in outcome.error


@pytest.mark.parametrize("value", [0.0, 1.0, 98.0, 12345.0])
def test_relative_deviation_of_identical_values_is_zero(value: float) -> None:
    assert relative_deviation(value, value) == 0.0


def test_zero_baseline_rejected_even_with_huge_threshold() -> None:
    client = RecordingClient(AdvisoryCandidate(forecast_demand=1, demand_std_dev=0))
    outcome = _evaluate(AdvisoryGuard(client=client, threshold=1e12), _baseline(0, 0))

    assert outcome.deviation_exceeded is True
    assert outcome.forecast_demand == 0
    assert any("inf%" in note for note in outcome.notes)


def test_fetch_without_client_raises_unavailable() -> None:
    guard = AdvisoryGuard(client=None)

    with pytest.raises(AdvisoryUnavailableError) as excinfo:
        asyncio.run(guard._fetch("prompt"))

    assert excinfo.value.reason == "disabled"
