from __future__ import annotations

import time
import uuid
from collections import defaultdict, deque
from typing import Deque, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from .metrics import MetricsCollector


# Only routes that start conversations or turns are throttled.
LIMITED_PATHS = ("/api/chat", "/api/sessions")


class SlidingWindowLimiter:
    """Per-client request budget over a sliding time window."""

    def __init__(self, requests: int, window_s: float):
        self.requests = requests
        self.window_s = window_s
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def allow(self, client: str) -> bool:
        if self.requests <= 0:
            return True
        now = time.monotonic()
        hits = self._hits[client]
        while hits and hits[0] <= now - self.window_s:
            hits.popleft()
        if len(hits) >= self.requests:
            return False
        hits.append(now)
        return True

def error_body(code: str, message: str, request_id=None) -> dict:
    return {
        "status": "error",
        "error": {"code": code, "message": message},
        "request_id": request_id,
    }


def register_http_middlewares(
    app: FastAPI,
    metrics: MetricsCollector,
    limiter: SlidingWindowLimiter,
) -> None:
    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.method == "POST" and request.url.path in LIMITED_PATHS:
            key = request.client.host if request.client else "unknown"
            if not limiter.allow(key):
                return JSONResponse(
                    status_code=429,
                    content=error_body(
                        "rate_limited",
                        "Too many requests: slow down and retry shortly",
                        getattr(request.state, "request_id", None),
                    ),
                )
        return await call_next(request)

    @app.middleware("http")
    async def logging_and_metrics(request: Request, call_next):
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            # Streaming responses are timed to the headers, not the last frame.
            elapsed_ms = (time.perf_counter() - start) * 1000
            metrics.record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=elapsed_ms,
            )
            logger.info(
                "{} {} -> {} ({:.1f}ms) rid={}",
                request.method,
                request.url.path,
                status_code,
                elapsed_ms,
                getattr(request.state, "request_id", "-"),
            )

    # Registered last so it runs first and every later layer sees the id.
    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        with logger.contextualize(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
