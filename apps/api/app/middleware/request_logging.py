from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.context import get_request_context
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _actor_fields(request: Request) -> dict[str, Any]:
    context = get_request_context(request)
    if context is None:
        return {"actor_id": None, "actor_role": None}
    return {"actor_id": context.user_id, "actor_role": context.actor_role}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, method, 500, started, exc_info=True)
            raise

        self._record(request, method, response.status_code, started)
        return response

    def _record(self, request: Request, method: str, status_code: int, started: float, *, exc_info: bool = False) -> None:
        duration = time.perf_counter() - started
        # the route template is only known once the router has matched
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=status_code, duration=duration)

        if exc_info:
            level, message = logging.ERROR, "http.error"
        elif status_code >= 500:
            level, message = logging.WARNING, "http.request"
        else:
            level, message = logging.INFO, "http.request"
        logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(duration * 1000, 2),
                **_actor_fields(request),
            },
        )
