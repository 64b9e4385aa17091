from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import decode_bearer_token
from app.core.config import get_settings
from app.metrics import observe_pipeline_rejection


PIPELINE_PREFIX = "/api/pipeline"
WINDOW_SECONDS = 60

logger = logging.getLogger("app.pipeline")


@dataclass
class _Bucket:
    tokens: float
    last_refill: float

    def refill(self, now: float, capacity: int, rate: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(capacity), self.tokens + elapsed * rate)
        self.last_refill = now


class _MutationLimiter:
    """Token buckets keyed by ``(user, route group)``, refilled continuously over the window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, user_id: str, route_group: str, capacity: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, WINDOW_SECONDS

        now = time.monotonic()
        rate = capacity / float(WINDOW_SECONDS)
        with self._lock:
            bucket = self._buckets.setdefault((user_id, route_group), _Bucket(float(capacity), now))
            bucket.refill(now, capacity, rate)
            if bucket.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - bucket.tokens) / rate))
            bucket.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _MutationLimiter()


class PipelineMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith(PIPELINE_PREFIX)
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        user_id = _resolve_user_id(request)
        route_group = _resolve_route_group(path)
        allowed, retry_after = _limiter.take(user_id, route_group, settings.rate_limit_pipeline_mutations_per_minute)
        if allowed:
            return await call_next(request)

        correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
        observe_pipeline_rejection(route_group, "rate_limited")
        logger.warning(
            "pipeline.rate_limited",
            extra={"path": path, "actor_id": user_id, "outcome": "rate_limited"},
        )
        return JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many pipeline changes, retry later",
                "details": {"route_group": route_group, "retry_after": retry_after},
                "correlation_id": correlation_id,
            },
            headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
        )


def _resolve_route_group(path: str) -> str:
    # /api/pipeline/leads/{id}/move -> "move", /api/pipeline/leads -> "leads"
    parts = [part for part in path[len(PIPELINE_PREFIX):].split("/") if part]
    if not parts:
        return "pipeline"
    if len(parts) >= 3:
        return parts[2]
    return parts[0]


def _resolve_user_id(request: Request) -> str:
    payload = decode_bearer_token(request.headers.get("authorization", ""))
    if payload is None or payload.get("sub") is None:
        return "anonymous"
    return str(payload["sub"])


def reset_rate_limiter() -> None:
    _limiter.clear()
