"""Prometheus metrics for sync passes and AmoebaCRM requests.

Provides:
- sync_records_total: per-record outcomes for push and pull passes
- remote_requests_total / remote_request_duration_seconds: transport calls
- MetricsMiddleware: HTTP request count and duration
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_records_total = Counter(
    "amoebacrm_sync_records_total",
    "Records processed by sync passes",
    ["direction", "outcome"],
)

# ── Transport Metrics ────────────────────────────────────────────────────────

remote_requests_total = Counter(
    "amoebacrm_remote_requests_total",
    "Total AmoebaCRM API requests",
    ["method", "status"],
)

remote_request_duration_seconds = Histogram(
    "amoebacrm_remote_request_duration_seconds",
    "AmoebaCRM API request duration in seconds",
    ["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "amoebacrm_http_requests_total",
    "Total HTTP requests served",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "amoebacrm_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method/endpoint.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path
        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
