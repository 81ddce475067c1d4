"""Prometheus metrics for the Seal gateway.

Metrics goals:
- low-cardinality labels (outcome and state names only, never ids or addresses)
- operators can tell policy denial from key-server unavailability even though
  callers only ever see one error category
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "seal_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "seal_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
UPLOADS_TOTAL = Counter(
    "seal_uploads_total",
    "Total uploads by outcome",
    ["outcome"],
)
DOWNLOADS_TOTAL = Counter(
    "seal_downloads_total",
    "Total downloads by terminal state",
    ["state"],
)
KEY_FETCHES_TOTAL = Counter(
    "seal_key_fetches_total",
    "Total key-share fetches by outcome",
    ["outcome"],
)


def record_upload(outcome: str) -> None:
    UPLOADS_TOTAL.labels(outcome=str(outcome)).inc()


def record_download(state: str) -> None:
    DOWNLOADS_TOTAL.labels(state=str(state)).inc()


def record_key_fetch(outcome: str) -> None:
    KEY_FETCHES_TOTAL.labels(outcome=str(outcome)).inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("SEAL_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
