"""Prometheus request metrics for the generation API.

For streaming responses the recorded latency is time to response headers,
not time to the terminal frame.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from prometheus_client import Histogram
from starlette.requests import Request
from starlette.responses import Response

REQUEST_LATENCY = Histogram(
    "genstream_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0),
)

_KNOWN_ROUTES = ("/generate/project", "/usage", "/health")


def sanitize_path(path: str) -> str:
    """Collapse paths to a known route label so cardinality stays bounded."""

    if not path:
        return "/"
    clean = path.split("?")[0]
    if clean.startswith("/api/"):
        clean = clean[len("/api"):]
    for route in _KNOWN_ROUTES:
        if clean == route or clean.startswith(route + "/"):
            return route
    return "/other"


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(time.perf_counter() - start)
        return response

    return middleware
