"""Prometheus metrics for the gateway."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("provider_gateway", "AI provider gateway info")
APP_INFO.info({"version": "1.0.0", "name": "provider_gateway"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

ROUTED_REQUESTS = Counter(
    "gateway_routed_requests_total",
    "Completion requests handled by the router",
    ["provider", "outcome"],  # outcome: success | cached | failed | rejected
)

PROVIDER_LATENCY = Histogram(
    "gateway_provider_latency_seconds",
    "Provider call latency in seconds (successful calls)",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

PROVIDER_ERRORS = Counter(
    "gateway_provider_errors_total",
    "Provider call failures by error class",
    ["provider", "error"],
)

CACHE_LOOKUPS = Counter(
    "gateway_cache_lookups_total",
    "Cache lookups by result",
    ["result"],  # memory | persistent | similarity | miss
)

CIRCUIT_TRANSITIONS = Counter(
    "gateway_circuit_transitions_total",
    "Circuit breaker state transitions",
    ["provider", "state"],
)

TOKENS_USED = Counter(
    "gateway_tokens_total",
    "Tokens consumed",
    ["provider", "direction"],  # input | output
)

COST_USD = Counter(
    "gateway_cost_usd_total",
    "Cost in USD",
    ["provider"],
)


# --- Middleware ---


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = request.url.path

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
