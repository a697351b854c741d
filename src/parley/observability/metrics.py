from __future__ import annotations

"""Prometheus metrics for the Parley API.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters the conversation engine updates per turn.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "parley_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

CHAT_TURNS = Counter(
    "parley_chat_turns_total",
    "Chat turns by delivery mode and outcome",
    labelnames=("mode", "outcome"),
)

STREAM_CHUNKS = Counter(
    "parley_stream_chunks_total",
    "Chunk events forwarded to streaming callers",
)

RATE_LIMIT_REJECTIONS = Counter(
    "parley_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    labelnames=("category", "tier"),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /conversations/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
