"""
Prometheus metrics for the knowledge service.

Features:
- HTTP request metrics (count, duration)
- Circuit breaker state gauge
- Knowledge pipeline counters (previews, confirms, facts, asks, questions)
"""
import re
import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    flags=re.IGNORECASE,
)

# HTTP Request metrics
http_requests_total = Counter(
    "ravenloom_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"]
)

http_request_duration_seconds = Histogram(
    "ravenloom_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

circuit_breaker_state = Gauge(
    "ravenloom_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 0.5=half-open)",
    ["service"]
)

# Knowledge metrics
remember_previews_total = Counter(
    "ravenloom_remember_previews_total",
    "Remember previews created",
    ["mismatch"]
)

remember_confirms_total = Counter(
    "ravenloom_remember_confirms_total",
    "Remember confirm attempts by outcome",
    ["outcome"]
)

facts_materialized_total = Counter(
    "ravenloom_facts_materialized_total",
    "Facts written or reused by materialization",
    ["action"]
)

ask_requests_total = Counter(
    "ravenloom_ask_requests_total",
    "Ask requests by escalation recommendation",
    ["escalate"]
)

team_questions_total = Counter(
    "ravenloom_team_questions_total",
    "Team questions created",
    ["origin"]
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP request metrics.

    Records:
    - Request count by method, endpoint, status code
    - Request duration by method, endpoint
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        endpoint = normalize_path(request.url.path)
        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code)
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)
        return response


def normalize_path(path: str) -> str:
    """Replace UUIDs and numeric ids with placeholders to limit cardinality."""
    path = _UUID_RE.sub("{id}", path)
    return re.sub(r"/\d+(/|$)", "/{id}\\1", path)


def update_circuit_breaker_state(service: str, state: str) -> None:
    """Record a circuit breaker state change."""
    value = {"closed": 0.0, "open": 1.0, "half_open": 0.5}.get(state, 0.0)
    circuit_breaker_state.labels(service=service).set(value)
