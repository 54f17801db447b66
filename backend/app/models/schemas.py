r"""backend\app\models\schemas.py

Pydantic models used throughout the API.

These models serve as both request payload validators and response
serialisation schemas.  Using typed models ensures that clients and
servers agree on the structure of the data being exchanged.  Numeric inputs
are validated here, at the boundary, so that the baseline cascade only ever
sees finite non-negative quantities.
"""

from __future__ import annotations

import re
from datetime import date as date_type
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

_MONTH_ONLY = re.compile(r"^(\d{4})-(\d{2})$")

BaselineMethod = Literal[
    "formula-monthly",
    "formula-monthly-partial",
    "daily-ewma",
    "category-peer-median",
    "metrics-fallback",
]


def normalize_date_key(value: Union[str, date_type, datetime]) -> str:
    """Return a timezone-stable ``YYYY-MM-DD`` key.

    Aware datetimes are converted to UTC first; ``YYYY-MM`` month strings map
    to the first day of the month.
    """

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date_type):
        return value.isoformat()

    text = str(value).strip()
    month_match = _MONTH_ONLY.match(text)
    if month_match:
        return date_type(int(month_match.group(1)), int(month_match.group(2)), 1).isoformat()
    if len(text) == 10:
        return date_type.fromisoformat(text).isoformat()
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return normalize_date_key(parsed)


# ---------------------------------------------------------------------------
# Demand history


class DemandSample(BaseModel):
    """One immutable historical observation."""

    model_config = ConfigDict(frozen=True)

    date: str = Field(..., description="Calendar anchor as YYYY-MM-DD")
    quantity: float = Field(..., ge=0, allow_inf_nan=False)

    @field_validator("date", mode="before")
    @classmethod
    def _normalise_date(cls, value: object) -> str:
        return normalize_date_key(value)  # type: ignore[arg-type]


class HistoryPoint(BaseModel):
    """Caller supplied history entry (``month`` is accepted for ``date``)."""

    date: Optional[str] = Field(None, validation_alias=AliasChoices("date", "month"))
    actual: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    forecast: Optional[float] = Field(None, ge=0, allow_inf_nan=False)

    @field_validator("date", mode="before")
    @classmethod
    def _normalise_date(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        return normalize_date_key(value)  # type: ignore[arg-type]


class DailyHistoryPoint(BaseModel):
    date: str
    outbound_quantity: float = Field(0.0, ge=0, allow_inf_nan=False)


class WeeklyHistoryPoint(BaseModel):
    week_start: str
    outbound_quantity: float = Field(0.0, ge=0, allow_inf_nan=False)
    promo: bool = False


class PeerProduct(BaseModel):
    sku: str
    daily_avg: Optional[float] = None
    daily_std_dev: Optional[float] = None


class ProductRecord(BaseModel):
    """Catalogue entry used by the peer registry and the replenishment view."""

    sku: str
    name: Optional[str] = None
    category: Optional[str] = None
    product_id: Optional[int] = None
    daily_avg: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    daily_std: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    on_hand: float = Field(0.0, ge=0, allow_inf_nan=False)
    reserved: float = Field(0.0, ge=0, allow_inf_nan=False)
    configured_reorder_point: float = Field(0.0, ge=0, allow_inf_nan=False)
    lead_time_days: Optional[float] = Field(None, ge=0, allow_inf_nan=False)

    @field_validator("sku", mode="before")
    @classmethod
    def _normalise_sku(cls, value: object) -> str:
        text = str(value or "").strip().upper()
        if not text:
            raise ValueError("sku must not be empty")
        return text


# ---------------------------------------------------------------------------
# Baseline / advisory / recommendation


class DemandMetrics(BaseModel):
    """Metrics the caller already knows about a product."""

    daily_avg: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    daily_std: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    avg_outbound_7d: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    on_hand: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    lead_time_days: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    service_level_percent: Optional[float] = Field(None, ge=0, allow_inf_nan=False)


class BaselineEstimate(BaseModel):
    """Daily demand estimate produced by the baseline cascade."""

    forecast_demand: int = Field(..., ge=0)
    demand_std_dev: int = Field(..., ge=0)
    method: BaselineMethod
    sample_count: int = 0
    window_label: str = ""
    raw_daily_values: List[float] = Field(default_factory=list)

    def summary(self) -> str:
        return (
            f"Forecast demand {self.forecast_demand:,} EA/day, "
            f"sigma={self.demand_std_dev:,} EA/day ({self.method})"
        )


class AdvisoryCandidate(BaseModel):
    """Untrusted suggestion returned by the advisory service."""

    forecast_demand: Optional[float] = None
    demand_std_dev: Optional[float] = None
    lead_time_days: Optional[float] = None
    service_level_percent: Optional[float] = None
    notes: List[str] = Field(default_factory=list)
    summary: str = ""


class RecommendationResult(BaseModel):
    """Final demand figures handed back to the caller."""

    sku: Optional[str] = None
    forecast_demand: Optional[int] = None
    demand_std_dev: Optional[int] = None
    lead_time_days: int
    service_level_percent: float
    notes: List[str] = Field(default_factory=list)
    raw_summary: str = ""
    method: Optional[BaselineMethod] = None
    advisory_applied: bool = False
    baseline: Optional[BaselineEstimate] = None


class ProductContext(BaseModel):
    sku: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None


class ForecastRecommendationRequest(BaseModel):
    """Payload for ``POST /recommendations/forecast``."""

    product: ProductContext = Field(default_factory=ProductContext)
    metrics: Optional[DemandMetrics] = None
    history: List[HistoryPoint] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Replenishment


class ReplenishmentPolicy(BaseModel):
    lead_time_days: float = Field(..., ge=0, allow_inf_nan=False)
    service_level_z: float = Field(1.6449, ge=0, allow_inf_nan=False)
    correlation_rho: float = Field(0.25, ge=0, lt=1, allow_inf_nan=False)
    configured_reorder_point: float = Field(0.0, ge=0, allow_inf_nan=False)


class StockState(BaseModel):
    on_hand: float = Field(..., ge=0, allow_inf_nan=False)
    reserved: float = Field(0.0, ge=0, allow_inf_nan=False)


class ReplenishmentMetrics(BaseModel):
    safety_stock: int = Field(..., ge=0)
    reorder_point: int = Field(..., ge=0)
    recommended_order_quantity: int = Field(..., ge=0)
    available_stock: int = Field(..., ge=0)


class WeeklyDemandSummary(BaseModel):
    mean: float = 0.0
    std_dev: float = 0.0
    sample_size: int = 0
    total_quantity: float = 0.0


class WeeklyForecastPoint(BaseModel):
    week_start: str
    actual: Optional[float] = None
    forecast: int
    phase: Literal["history", "forecast"]
    promo: bool = False


class WeeklyForecastResult(BaseModel):
    timeline: List[WeeklyForecastPoint]
    seasonal_factors: List[float]
    seasonal_period: int
    level: float = 0.0
    trend: float = 0.0
    mean_absolute_percent_error: Optional[float] = None


class WeeklyReplenishmentMetrics(BaseModel):
    """Weekly variant; ``None`` means "not computable" (zero lead time)."""

    lead_time_weeks: float
    avg_weekly_demand: int
    weekly_std_dev: int
    reorder_point_weekly: Optional[int] = None
    recommended_order_quantity_weekly: Optional[int] = None


# ---------------------------------------------------------------------------
# Policy drafts


class PolicyDraft(BaseModel):
    sku: str
    name: Optional[str] = None
    forecast_demand: Optional[float] = None
    demand_std_dev: Optional[float] = None
    lead_time_days: Optional[int] = None
    service_level_percent: Optional[float] = None
    smoothing_alpha: float
    correlation_rho: float


# ---------------------------------------------------------------------------
# Action plans


class ActionPlanStatus(str, Enum):
    DRAFT = "draft"
    REVIEWED = "reviewed"
    APPROVED = "approved"


class ActionPlanEvent(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"


ActionPlanSource = Literal["llm", "manual"]


class ActionItemKpi(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    target: Union[str, float] = ""
    window: str = Field(..., min_length=1)


class ActionItem(BaseModel):
    """A single who/what/when step; immutable once attached to a plan."""

    model_config = ConfigDict(frozen=True)

    id: str
    who: str = Field(..., min_length=1)
    what: str = Field(..., min_length=1)
    when: str = Field(..., min_length=1)
    rationale: str = ""
    confidence: float = Field(0.5, ge=0, le=1)
    kpi: ActionItemKpi


class ActionPlan(BaseModel):
    id: str
    sku: str
    product_id: Optional[int] = None
    items: List[ActionItem]
    status: ActionPlanStatus = ActionPlanStatus.DRAFT
    source: ActionPlanSource = "manual"
    language: str = "en"
    version: str = "v1"
    created_by: str = "system"
    created_at: datetime
    updated_at: datetime
    reviewed_by: Optional[str] = None
    approved_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
