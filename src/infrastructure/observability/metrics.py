"""
Prometheus metrics definitions and FastAPI instrumentation.

Pipeline counters are module-level singletons updated from the application
services; ``setup_metrics`` wires request tracking and the ``/metrics``
endpoint into a FastAPI application.
"""

from __future__ import annotations

import time

from fastapi import FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response as StarletteResponse

# ======================================================================
# Pipeline metrics (module-level singletons)
# ======================================================================

sync_runs_total = Counter(
    "cost_sync_runs_total",
    "Per-user sync outcomes",
    labelnames=["outcome"],
    registry=REGISTRY,
)

sync_duration_seconds = Histogram(
    "cost_sync_duration_seconds",
    "Wall time of one per-user sync",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
    registry=REGISTRY,
)

anomalies_detected_total = Counter(
    "cost_anomalies_detected_total",
    "Anomalies produced by the engine",
    labelnames=["severity", "scope"],
    registry=REGISTRY,
)

notifications_total = Counter(
    "cost_notifications_total",
    "Notification reservation outcomes per channel",
    labelnames=["channel", "outcome"],
    registry=REGISTRY,
)

run_lock_acquisitions_total = Counter(
    "cost_run_lock_acquisitions_total",
    "Run lock acquisition attempts",
    labelnames=["job", "outcome"],
    registry=REGISTRY,
)

batch_users_total = Counter(
    "cost_batch_users_total",
    "Users processed by batch jobs",
    labelnames=["job", "outcome"],
    registry=REGISTRY,
)

api_requests_total = Counter(
    "api_requests_total",
    "Total number of API requests",
    labelnames=["method", "endpoint", "status"],
    registry=REGISTRY,
)

api_request_duration_seconds = Histogram(
    "api_request_duration_seconds",
    "Request latency in seconds",
    labelnames=["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)


# ======================================================================
# Middleware for automatic request instrumentation
# ======================================================================


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware that records request count and latency per route template."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response: Response = await call_next(request)
        duration = time.perf_counter() - start

        endpoint = self._get_path_template(request)
        api_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=str(response.status_code),
        ).inc()
        api_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(
            duration
        )
        return response

    @staticmethod
    def _get_path_template(request: Request) -> str:
        # Route templates keep user ids out of label values.
        route = request.scope.get("route")
        if route and hasattr(route, "path"):
            return route.path
        return "unmatched"


# ======================================================================
# Setup helper
# ======================================================================


def setup_metrics(app: FastAPI) -> None:
    """
    Instrument a FastAPI application with Prometheus metrics.

    * Adds the ``PrometheusMiddleware`` for automatic request tracking.
    * Registers a ``/metrics`` endpoint that serves the Prometheus
      exposition format.
    """

    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> StarletteResponse:
        return StarletteResponse(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
