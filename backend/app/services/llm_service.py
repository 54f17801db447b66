r"""backend/app/services/llm_service.py

Integration with Google's Gemini API (``google-generativeai``).

The client answers two questions: a demand/lead-time/service-level
suggestion for a SKU and a short list of who/what/when action items.  Every
failure is surfaced as :class:`AdvisoryUnavailableError` so that callers can
fall back to formula values without knowing about the SDK.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

import google.generativeai as genai

from ..core.config import get_settings
from ..core.errors import AdvisoryUnavailableError
from ..models.schemas import AdvisoryCandidate, BaselineEstimate, DemandMetrics, HistoryPoint

LOGGER = logging.getLogger(__name__)

PROMPT_HISTORY_POINTS = 8

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)

FORECAST_SYSTEM_PROMPT = (
    "You are a demand planning assistant. Given a product, its recent outbound history and "
    "the formula baseline, reply with a single JSON object containing forecastDemand "
    "(units per day), demandStdDev (units per day), leadTimeDays, serviceLevelPercent, "
    "notes (array of short strings) and rawText (one sentence summary). Do not add any "
    "other text."
)

ACTION_PLAN_SYSTEM_PROMPT = (
    "You are an inventory operations assistant. Reply with a JSON object "
    '{"action_items": [...]} where each item has id, who, what, when (YYYY-MM-DD), '
    "rationale, confidence (0-1) and kpi {name, target, window}."
)


# ---------------------------------------------------------------------------
# Prompt building


def _history_payload(history: Iterable[HistoryPoint]) -> List[Dict[str, Any]]:
    points = [p for p in history if p.date is not None]
    points.sort(key=lambda p: p.date or "")
    return [
        {"date": p.date, "actual": p.actual, "forecast": p.forecast}
        for p in points[-PROMPT_HISTORY_POINTS:]
    ]


def build_forecast_prompt(
    sku: Optional[str],
    *,
    name: Optional[str] = None,
    category: Optional[str] = None,
    metrics: Optional[DemandMetrics] = None,
    history: Iterable[HistoryPoint] = (),
    baseline: Optional[BaselineEstimate] = None,
) -> str:
    context = {
        "product": {"sku": sku, "name": name, "category": category},
        "metrics": metrics.model_dump(exclude_none=True) if metrics else {},
        "history": _history_payload(history),
        "baseline": (
            {
                "forecastDemand": baseline.forecast_demand,
                "demandStdDev": baseline.demand_std_dev,
                "method": baseline.method,
                "window": baseline.window_label,
            }
            if baseline
            else None
        ),
    }
    return f"{FORECAST_SYSTEM_PROMPT}\n\nContext:\n{json.dumps(context, ensure_ascii=False)}"


def build_action_plan_prompt(sku: str, context: Mapping[str, Any]) -> str:
    payload = {"sku": sku, **dict(context)}
    return f"{ACTION_PLAN_SYSTEM_PROMPT}\n\nContext:\n{json.dumps(payload, ensure_ascii=False, default=str)}"


# ---------------------------------------------------------------------------
# Response parsing


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the JSON object in ``text``.

    A fenced ```json block is preferred; otherwise the first ``{...}`` object
    in the text is decoded.
    """

    if not text or not text.strip():
        raise AdvisoryUnavailableError("advisory returned an empty response", reason="malformed")

    match = _FENCED_JSON.search(text)
    candidate = match.group(1) if match else None
    try:
        if candidate is not None:
            parsed = json.loads(candidate)
        else:
            start = text.find("{")
            if start < 0:
                raise ValueError("no JSON object found")
            parsed, _ = json.JSONDecoder().raw_decode(text[start:])
    except ValueError as exc:
        raise AdvisoryUnavailableError(
            f"advisory response is not valid JSON: {exc}", reason="malformed"
        ) from exc

    if not isinstance(parsed, dict):
        raise AdvisoryUnavailableError("advisory response is not a JSON object", reason="malformed")
    return parsed


def _pick_number(payload: Mapping[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, bool) or value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            return number
    return None


def _pick_notes(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [raw.strip()] if raw.strip() else []
    if isinstance(raw, list):
        return [item.strip() for item in raw if isinstance(item, str) and item.strip()]
    return []


def parse_forecast_response(text: str) -> AdvisoryCandidate:
    payload = extract_json_object(text)
    summary = payload.get("rawText") or payload.get("summary") or ""
    return AdvisoryCandidate(
        forecast_demand=_pick_number(payload, "forecastDemand", "forecast_demand", "demand"),
        demand_std_dev=_pick_number(payload, "demandStdDev", "demand_std_dev", "sigma"),
        lead_time_days=_pick_number(payload, "leadTimeDays", "lead_time_days", "leadTime"),
        service_level_percent=_pick_number(
            payload, "serviceLevelPercent", "service_level_percent", "serviceLevel"
        ),
        notes=_pick_notes(payload.get("notes")),
        summary=summary.strip() if isinstance(summary, str) else "",
    )


def parse_action_items_response(text: str) -> List[Dict[str, Any]]:
    payload = extract_json_object(text)
    items = payload.get("action_items", payload.get("actionItems"))
    if not isinstance(items, list):
        raise AdvisoryUnavailableError("advisory response has no action_items list", reason="malformed")
    return [item for item in items if isinstance(item, dict)]


# ---------------------------------------------------------------------------
# Error classification


def classify_error(exc: BaseException) -> AdvisoryUnavailableError:
    """Translate an SDK/transport exception into :class:`AdvisoryUnavailableError`."""

    status = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None

    if status in (401, 403):
        reason = "auth"
    elif status == 429:
        reason = "throttled"
    elif (status is not None and status >= 500) or isinstance(exc, (ConnectionError, TimeoutError)):
        reason = "unavailable"
    else:
        reason = "error"
    message = str(exc).strip() or exc.__class__.__name__
    return AdvisoryUnavailableError(message, status=status, reason=reason)


# ---------------------------------------------------------------------------
# Client


class GeminiAdvisoryClient:
    """Thin async wrapper around ``genai.GenerativeModel``."""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model_name = model_name or settings.gemini_model
        self._model: Optional[Any] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_model(self) -> Any:
        if not self.api_key:
            raise AdvisoryUnavailableError("GEMINI_API_KEY is not configured", reason="auth")
        if self._model is None:
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(self.model_name)
        return self._model

    async def _generate(self, prompt: str) -> str:
        model = self._get_model()
        try:
            response = await model.generate_content_async(
                prompt, generation_config={"temperature": 0.2}
            )
        except AdvisoryUnavailableError:
            raise
        except Exception as exc:
            raise classify_error(exc) from exc

        try:
            text = response.text
        except ValueError as exc:
            # raised by the SDK when the candidate was blocked or empty
            raise AdvisoryUnavailableError(f"advisory returned no text: {exc}", reason="malformed") from exc
        LOGGER.debug("Gemini %s returned %d characters", self.model_name, len(text or ""))
        return text or ""

    async def request_advisory(self, prompt: str) -> AdvisoryCandidate:
        return parse_forecast_response(await self._generate(prompt))

    async def request_action_items(self, prompt: str) -> List[Dict[str, Any]]:
        return parse_action_items_response(await self._generate(prompt))
