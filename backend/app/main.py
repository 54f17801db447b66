r"""backend\app\main.py

Main entrypoint for the FastAPI application.

The API exposes demand forecast recommendations, replenishment metrics,
policy drafts and the action-plan review workflow.  A health endpoint is
also provided for readiness/liveness checks.  Configuration is read from
environment variables and YAML files in `configs/`.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

# Load .env from repo root before settings are read
BASE_DIR = Path(__file__).resolve().parents[2]
load_dotenv(BASE_DIR / ".env")

from .api.v1 import (  # noqa: E402
    action_plans,
    configs,
    health,
    policies,
    recommendations,
    replenishment,
)
from .core.config import get_settings  # noqa: E402
from .core.observability import TokenAndRateLimitMiddleware, metrics_endpoint  # noqa: E402

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

_settings = get_settings()
logging.getLogger(__name__).info(
    "Advisory enabled: %s strict=%s model=%s",
    bool(_settings.gemini_api_key),
    _settings.strict_forecast_formula,
    _settings.gemini_model,
)

app = FastAPI(title="Demand Baseline & Replenishment API", version="0.1.0")

origins_env = os.getenv("CORS_ORIGINS", "")
origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # In production specify your UI domain(s)
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TokenAndRateLimitMiddleware)

# Include versioned routers
app.include_router(health.router, prefix="/api/v1")
app.include_router(recommendations.router, prefix="/api/v1")
app.include_router(replenishment.router, prefix="/api/v1")
app.include_router(policies.router, prefix="/api/v1")
app.include_router(action_plans.router, prefix="/api/v1")
app.include_router(configs.router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
def _root() -> RedirectResponse:
    """Redirect the root path to the interactive docs."""

    return RedirectResponse(url="/docs")


@app.get("/metrics", include_in_schema=False)
async def _metrics() -> Response:
    """Expose Prometheus metrics."""

    return metrics_endpoint()
