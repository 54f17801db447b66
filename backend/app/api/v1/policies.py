r"""backend\app\api\v1\policies.py

Routes for per-SKU policy drafts."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from ...core.config import get_settings
from ...models.schemas import PolicyDraft
from ...services.inventory_service import InventoryService
from ...services.policy_service import PolicyService

LOGGER = logging.getLogger(__name__)

router = APIRouter()

_inventory_service = InventoryService(data_root=get_settings().data_dir)
_policy_service = PolicyService()


class BulkSaveRequest(BaseModel):
    items: List[Dict[str, Any]] = Field(..., min_length=1)


def _error_payload(code: str, message: str) -> dict[str, str]:
    """Return a standardised error payload."""

    return {"error": code, "message": message}


@router.get("/policies", response_model=List[PolicyDraft])
def list_policies(prune: bool = True) -> List[PolicyDraft]:
    """Return all drafts; drafts for SKUs missing from the catalogue are pruned."""

    valid_skus = None
    if prune:
        products = _inventory_service.list_products()
        # an empty catalogue means "unknown", not "no products"
        if products:
            valid_skus = [record.sku for record in products]
    return _policy_service.list_drafts(valid_skus)


@router.post("/policies/bulk-save", response_model=List[PolicyDraft])
def bulk_save(body: BulkSaveRequest) -> List[PolicyDraft]:
    saved = _policy_service.bulk_save(body.items)
    if not saved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("invalid_items", "No item carried a valid SKU."),
        )
    return saved


@router.put("/policies/{sku}", response_model=PolicyDraft)
def put_policy(sku: str, body: Dict[str, Any]) -> PolicyDraft:
    draft = _policy_service.upsert({**body, "sku": sku})
    if draft is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error_payload("invalid_sku", "SKU must not be blank."),
        )
    return draft
