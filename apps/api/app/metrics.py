from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

pipeline_stage_transitions_total = Counter(
    "pipeline_stage_transitions_total",
    "Committed pipeline stage transitions",
    ["from_stage", "to_stage"],
)

pipeline_rejections_total = Counter(
    "pipeline_rejections_total",
    "Rejected pipeline operations by reason",
    ["operation", "reason"],
)

pipeline_history_entries_total = Counter(
    "pipeline_history_entries_total",
    "Appended pipeline history entries",
    ["entry_type"],
)

pipeline_operation_duration_seconds = Histogram(
    "pipeline_operation_duration_seconds",
    "Pipeline engine operation duration in seconds",
    ["operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(from_stage: str, to_stage: str) -> None:
    pipeline_stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage).inc()


def observe_pipeline_rejection(operation: str, reason: str) -> None:
    pipeline_rejections_total.labels(operation=operation, reason=reason).inc()


def observe_history_entry(entry_type: str) -> None:
    pipeline_history_entries_total.labels(entry_type=entry_type).inc()


def observe_pipeline_operation(operation: str, duration: float) -> None:
    pipeline_operation_duration_seconds.labels(operation=operation).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
