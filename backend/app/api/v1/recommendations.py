r"""backend\app\api\v1\recommendations.py

Routes for demand forecast recommendations."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from ...models.schemas import ForecastRecommendationRequest, RecommendationResult
from ...services.recommendation_service import RecommendationService
from . import policies

LOGGER = logging.getLogger(__name__)

router = APIRouter()

_recommendation_service = RecommendationService(
    inventory_service=policies._inventory_service,
    policy_service=policies._policy_service,
)


def get_recommendation_service() -> RecommendationService:
    return _recommendation_service


@router.post("/recommendations/forecast", response_model=RecommendationResult)
async def recommend_forecast(body: ForecastRecommendationRequest) -> RecommendationResult:
    """Resolve demand, spread, lead time and service level for one product.

    Always answers 200: missing data and advisory failures are reported in
    ``notes`` rather than as errors.
    """

    product = body.product
    return await get_recommendation_service().resolve_recommendation(
        product.sku,
        history=body.history,
        metrics=body.metrics,
        category=product.category,
        name=product.name,
    )
