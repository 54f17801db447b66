r"""backend\app\api\v1\replenishment.py

Routes for safety stock / reorder point calculations."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from ...core.errors import ValidationError
from ...models.schemas import DemandMetrics, StockState
from . import recommendations

LOGGER = logging.getLogger(__name__)

router = APIRouter()


class ReplenishmentRequest(BaseModel):
    sku: str = Field(..., min_length=1)
    on_hand: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    reserved: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    configured_reorder_point: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    forecast_demand: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    demand_std_dev: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    lead_time_days: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    service_level_percent: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    metrics: Optional[DemandMetrics] = None


def _error_payload(code: str, message: str) -> dict[str, str]:
    """Return a standardised error payload."""

    return {"error": code, "message": message}


@router.post("/replenishment")
async def replenishment(body: ReplenishmentRequest) -> Dict[str, Any]:
    """Return daily and weekly replenishment metrics for a SKU.

    Stock figures not supplied in the body are read from the product
    catalogue.
    """

    service = recommendations.get_recommendation_service()
    sku = body.sku.strip().upper()
    record = service.inventory_service.get_product(sku)

    on_hand = body.on_hand if body.on_hand is not None else (record.on_hand if record else None)
    if on_hand is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload(
                "stock_unavailable", f"on_hand is required for unknown SKU '{sku}'."
            ),
        )
    reserved = body.reserved if body.reserved is not None else (record.reserved if record else 0.0)
    configured = body.configured_reorder_point
    if configured is None:
        configured = record.configured_reorder_point if record else 0.0
    lead_time = body.lead_time_days
    if lead_time is None and record is not None:
        lead_time = record.lead_time_days

    try:
        return await service.recommend_replenishment(
            sku,
            StockState(on_hand=on_hand, reserved=reserved),
            forecast_demand=body.forecast_demand,
            demand_std_dev=body.demand_std_dev,
            lead_time_days=lead_time,
            service_level_percent=body.service_level_percent,
            configured_reorder_point=configured,
            metrics=body.metrics,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("invalid_input", str(exc)),
        ) from exc
    except ModelValidationError as exc:
        LOGGER.warning("Replenishment inputs for %s rejected: %s", sku, exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload(
                "invalid_input", "; ".join(error["msg"] for error in exc.errors())
            ),
        ) from exc
