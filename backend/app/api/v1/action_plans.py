r"""backend\app\api\v1\action_plans.py

Endpoints for the action-plan review workflow (draft -> reviewed -> approved)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from ...core.config import get_settings
from ...core.errors import InvalidTransitionError, PlanNotFoundError, ValidationError
from ...models.schemas import ActionPlan, ActionPlanSource, ActionPlanStatus
from ...services.action_plan_service import ActionPlanService, ActionPlanStore
from ...services.llm_service import GeminiAdvisoryClient

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def _build_service() -> ActionPlanService:
    settings = get_settings()
    client = GeminiAdvisoryClient()
    return ActionPlanService(
        store=ActionPlanStore(),
        client=client if client.configured else None,
        advisory_enabled=not settings.strict_forecast_formula,
        timeout=settings.advisory_timeout_seconds,
    )


_action_plan_service = _build_service()


class ActionPlanCreate(BaseModel):
    sku: str = Field(..., min_length=1)
    product_id: Optional[int] = None
    items: List[Dict[str, Any]] = Field(..., min_length=1)
    source: ActionPlanSource = "manual"
    created_by: str = "system"
    language: str = "en"
    version: str = "v1"


class ActionPlanUpdate(BaseModel):
    items: List[Dict[str, Any]] = Field(..., min_length=1)


class ActionPlanGenerate(BaseModel):
    sku: str = Field(..., min_length=1)
    product_id: Optional[int] = None
    available_stock: float = Field(..., ge=0, allow_inf_nan=False)
    safety_stock: float = Field(..., ge=0, allow_inf_nan=False)
    recommended_order_quantity: Optional[float] = Field(None, ge=0, allow_inf_nan=False)


def _error_payload(code: str, message: str) -> dict[str, str]:
    """Return a standardised error payload."""

    return {"error": code, "message": message}


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, PlanNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=_error_payload("not_found", str(exc))
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=_error_payload("invalid_transition", str(exc)),
        )
    if isinstance(exc, OSError):
        LOGGER.error("Action plan audit log write failed: %s", exc)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_error_payload("audit_unavailable", "The transition could not be recorded."),
        )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST, detail=_error_payload("invalid_input", str(exc))
    )


@router.get("/action-plans", response_model=List[ActionPlan])
def list_action_plans(
    sku: Optional[str] = None,
    product_id: Optional[int] = None,
    status_filter: Optional[ActionPlanStatus] = Query(None, alias="status"),
    limit: Optional[int] = None,
) -> List[ActionPlan]:
    if limit is not None and limit < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("invalid_limit", "limit must be non-negative."),
        )
    return _action_plan_service.store.list_plans(
        sku=sku.strip() if sku else None,
        product_id=product_id,
        status=status_filter,
        limit=limit,
    )


@router.post("/action-plans", response_model=ActionPlan, status_code=status.HTTP_201_CREATED)
def create_action_plan(body: ActionPlanCreate) -> ActionPlan:
    try:
        return _action_plan_service.store.create_plan(
            body.sku,
            body.items,
            product_id=body.product_id,
            source=body.source,
            created_by=body.created_by,
            language=body.language,
            version=body.version,
        )
    except ValidationError as exc:
        raise _translate(exc) from exc


@router.post(
    "/action-plans/generate", response_model=ActionPlan, status_code=status.HTTP_201_CREATED
)
async def generate_action_plan(body: ActionPlanGenerate) -> ActionPlan:
    """Create a draft plan from advisory items, or the deterministic fallback."""

    try:
        return await _action_plan_service.generate_plan(
            body.sku,
            available_stock=body.available_stock,
            safety_stock=body.safety_stock,
            recommended_order_quantity=body.recommended_order_quantity,
            product_id=body.product_id,
        )
    except ValidationError as exc:
        raise _translate(exc) from exc


@router.get("/action-plans/audit-log")
def get_audit_log(limit: int = 50) -> Dict[str, List[Dict[str, Any]]]:
    """Return the most recent status transitions."""

    if limit < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("invalid_limit", "limit must be non-negative."),
        )
    return {"events": _action_plan_service.store.read_audit_log(limit)}


@router.get("/action-plans/{plan_id}", response_model=ActionPlan)
def get_action_plan(plan_id: str) -> ActionPlan:
    try:
        return _action_plan_service.store.get_plan(plan_id)
    except PlanNotFoundError as exc:
        raise _translate(exc) from exc


@router.put("/action-plans/{plan_id}", response_model=ActionPlan)
def update_action_plan(plan_id: str, body: ActionPlanUpdate) -> ActionPlan:
    try:
        return _action_plan_service.store.replace_items(plan_id, body.items)
    except (PlanNotFoundError, InvalidTransitionError, ValidationError) as exc:
        raise _translate(exc) from exc


@router.post("/action-plans/{plan_id}/submit", response_model=ActionPlan)
def submit_action_plan(plan_id: str) -> ActionPlan:
    try:
        return _action_plan_service.store.submit(plan_id)
    except (PlanNotFoundError, InvalidTransitionError, OSError) as exc:
        raise _translate(exc) from exc


@router.post("/action-plans/{plan_id}/approve", response_model=ActionPlan)
def approve_action_plan(plan_id: str) -> ActionPlan:
    try:
        return _action_plan_service.store.approve(plan_id)
    except (PlanNotFoundError, InvalidTransitionError, OSError) as exc:
        raise _translate(exc) from exc
