from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry.trace import Span

from app.metrics import observe_pipeline_operation, observe_pipeline_rejection
from app.otel import get_tracer, mark_span_failed
from app.pipeline.errors import PipelineError
from app.pipeline.roles import Actor

logger = logging.getLogger("app.pipeline")
tracer = get_tracer("app.pipeline")


@contextmanager
def pipeline_operation(
    operation: str,
    *,
    actor: Actor,
    lead_id: Any = None,
    **attributes: Any,
) -> Iterator[Span]:
    """Wrap one pipeline operation in a ``pipeline.transition`` span with rejection accounting."""
    started = time.perf_counter()
    with tracer.start_as_current_span(
        "pipeline.transition",
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        span.set_attribute("pipeline.operation", operation)
        span.set_attribute("actor_role", actor.role.value)
        if lead_id is not None:
            span.set_attribute("lead_id", str(lead_id))
        if actor.correlation_id:
            span.set_attribute("correlation_id", actor.correlation_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except PipelineError as exc:
            mark_span_failed(span, exc, reason=exc.code)
            observe_pipeline_rejection(operation, exc.code)
            logger.info(
                f"pipeline.{operation}.rejected",
                extra={
                    "lead_id": str(lead_id) if lead_id is not None else None,
                    "outcome": exc.code,
                    "actor_id": actor.user_id,
                    "actor_role": actor.role.value,
                    "error": exc.message,
                },
            )
            raise
        finally:
            observe_pipeline_operation(operation, time.perf_counter() - started)
