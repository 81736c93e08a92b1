from __future__ import annotations

"""Prometheus metrics for the Aura chat backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for the chat streaming pipeline.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds); streamed replies run long
REQUEST_LATENCY = Histogram(
    "aura_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

TOKENS_CONSUMED = Counter(
    "aura_chat_tokens_consumed_total",
    "Tokens committed to user usage ledgers",
    labelnames=("method",),
)

STREAM_OUTCOMES = Counter(
    "aura_chat_streams_total",
    "Chat message streams by terminal outcome",
    labelnames=("outcome",),
)

STREAM_FRAGMENTS = Counter(
    "aura_chat_stream_fragments_total",
    "Completion fragments forwarded to clients",
)

TOKEN_COUNTS = Counter(
    "aura_token_counts_total",
    "Token counting calls by method and cache result",
    labelnames=("method", "cache"),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /chat/{id}) to a coarse label.

    Keeps the first segment, and the second as well under the /api prefix.
    """
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return "/api/" + segs[1]
    return "/" + segs[0]


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except ValueError:
            pass
        return response

    return middleware
