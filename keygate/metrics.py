"""Prometheus metrics for KeyGate.

Labels stay low-cardinality: route templates, checkpoint ids, error codes.
Never session ids, identities or keys.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "keygate_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "keygate_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
SESSIONS_STARTED_TOTAL = Counter(
    "keygate_sessions_started_total",
    "Sessions created",
)
CHECKPOINTS_COMPLETED_TOTAL = Counter(
    "keygate_checkpoints_completed_total",
    "Checkpoint records added to sessions",
    ["checkpoint", "path"],
)
CREDENTIALS_ISSUED_TOTAL = Counter(
    "keygate_credentials_issued_total",
    "Keys minted",
)
REDEMPTIONS_TOTAL = Counter(
    "keygate_redemptions_total",
    "Key redemption attempts",
    ["outcome"],
)
REJECTIONS_TOTAL = Counter(
    "keygate_rejections_total",
    "Requests rejected with a KeyGate error",
    ["code"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "keygate_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["endpoint"],
)
PENDING_VERIFICATIONS = Gauge(
    "keygate_pending_verifications",
    "Pending checkpoint verifications held in memory",
)


def record_session_started() -> None:
    SESSIONS_STARTED_TOTAL.inc()


def record_checkpoint(checkpoint_id: str, path: str) -> None:
    CHECKPOINTS_COMPLETED_TOTAL.labels(checkpoint=str(checkpoint_id), path=str(path)).inc()


def record_credential_issued() -> None:
    CREDENTIALS_ISSUED_TOTAL.inc()


def record_redemption(outcome: str) -> None:
    REDEMPTIONS_TOTAL.labels(outcome=str(outcome)).inc()


def record_rejection(code: str) -> None:
    REJECTIONS_TOTAL.labels(code=str(code)).inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def set_pending_verifications(count: int) -> None:
    PENDING_VERIFICATIONS.set(float(count))


def instrument_fastapi(app: FastAPI, authorize: Optional[Callable[[Request], bool]] = None) -> None:
    """Attach /metrics and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("KEYGATE_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
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

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
