r"""backend\app\api\v1\health.py

Health check endpoints.

A GET request to `/api/v1/health` reports liveness together with the
advisory mode the service is running in.
"""

from fastapi import APIRouter

from ...core.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, object]:
    """Return a basic health indicator."""

    settings = get_settings()
    return {
        "status": "ok",
        "strict_forecast_formula": settings.strict_forecast_formula,
        "advisory_configured": bool(settings.gemini_api_key),
    }
