from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.pipeline.errors import ConflictError, FieldValidationError, PersistenceError, PipelineError
from app.pipeline.models import PipelineHistoryEntry, PipelineIdempotencyKey, PipelineLead

logger = logging.getLogger(__name__)

# Unique constraints that only fire when two writers race on the same lead or key.
RACE_CONSTRAINTS = {
    "uq_pipeline_history_lead_sequence": ("pipeline_history_entry.lead_id", "pipeline_history_entry.sequence"),
    "uq_pipeline_idempotency_endpoint_key": ("pipeline_idempotency_key.endpoint", "pipeline_idempotency_key.key"),
}


def _violated_race_constraint(exc: IntegrityError) -> str | None:
    diag = getattr(exc.orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name in RACE_CONSTRAINTS:
        return constraint_name

    # SQLite reports the columns instead of the constraint name.
    message = str(exc.orig)
    for name, columns in RACE_CONSTRAINTS.items():
        if name in message or ("UNIQUE" in message and all(column in message for column in columns)):
            return name
    return None


@contextmanager
def unit_of_work(session: Session) -> Iterator[None]:
    """Commit once on success; roll back and translate storage failures otherwise."""
    try:
        yield
        session.commit()
    except PipelineError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        constraint = _violated_race_constraint(exc)
        if constraint is not None:
            raise ConflictError(
                "lead was modified concurrently",
                details={"constraint": constraint},
            ) from exc
        logger.warning("pipeline.integrity_rejected", extra={"error": str(exc.orig)})
        raise FieldValidationError(
            "lead fields violate a storage constraint",
            details={"error": str(exc.orig)},
        ) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("pipeline.persistence_failed", extra={"error": str(exc)})
        raise PersistenceError("pipeline storage is unavailable") from exc


@contextmanager
def read_guard(session: Session) -> Iterator[None]:
    """Surface storage failures during reads as PersistenceError."""
    try:
        yield
    except PipelineError:
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("pipeline.read_failed", extra={"error": str(exc)})
        raise PersistenceError("pipeline storage is unavailable") from exc


class PipelineRepository:
    def get_lead(self, session: Session, lead_id: uuid.UUID) -> PipelineLead | None:
        return session.scalar(select(PipelineLead).where(PipelineLead.id == lead_id))

    def list_leads(
        self,
        session: Session,
        *,
        limit: int | None = None,
        stage: str | None = None,
        closer_id: str | None = None,
    ) -> list[PipelineLead]:
        query = select(PipelineLead)
        if stage is not None:
            query = query.where(PipelineLead.current_stage == stage)
        if closer_id is not None:
            query = query.where(PipelineLead.closer_id == closer_id)
        query = query.order_by(PipelineLead.created_at.desc(), PipelineLead.id.desc())
        if limit is not None:
            query = query.limit(limit)
        return list(session.scalars(query).all())

    def list_calls(self, session: Session, *, call_date: date, closer_id: str | None = None) -> list[PipelineLead]:
        query = select(PipelineLead).where(PipelineLead.call_date == call_date)
        if closer_id is not None:
            query = query.where(PipelineLead.closer_id == closer_id)
        query = query.order_by(PipelineLead.call_time.asc(), PipelineLead.created_at.asc())
        return list(session.scalars(query).all())

    def get_idempotency_record(self, session: Session, endpoint: str, key: str) -> PipelineIdempotencyKey | None:
        return session.scalar(
            select(PipelineIdempotencyKey).where(
                and_(PipelineIdempotencyKey.endpoint == endpoint, PipelineIdempotencyKey.key == key)
            )
        )

    def conditional_update(
        self,
        session: Session,
        lead_id: uuid.UUID,
        *,
        row_version: int,
        values: dict[str, Any],
        expected_stage: str | None = None,
        require_unconfirmed_payment: bool = False,
    ) -> bool:
        conditions = [PipelineLead.id == lead_id, PipelineLead.row_version == row_version]
        if expected_stage is not None:
            conditions.append(PipelineLead.current_stage == expected_stage)
        if require_unconfirmed_payment:
            conditions.append(PipelineLead.payment_confirmed.is_(False))

        result = session.execute(
            update(PipelineLead)
            .where(and_(*conditions))
            .values(**values, row_version=PipelineLead.row_version + 1)
        )
        return result.rowcount == 1

    def next_sequence(self, session: Session, lead_id: uuid.UUID) -> int:
        current = session.scalar(
            select(func.max(PipelineHistoryEntry.sequence)).where(PipelineHistoryEntry.lead_id == lead_id)
        )
        return int(current or 0) + 1

    def last_entry_at(self, session: Session, lead_id: uuid.UUID) -> datetime | None:
        return session.scalar(
            select(func.max(PipelineHistoryEntry.created_at)).where(PipelineHistoryEntry.lead_id == lead_id)
        )

    def list_history(self, session: Session, lead_id: uuid.UUID) -> list[PipelineHistoryEntry]:
        return list(
            session.scalars(
                select(PipelineHistoryEntry)
                .where(PipelineHistoryEntry.lead_id == lead_id)
                .order_by(PipelineHistoryEntry.sequence.desc())
            ).all()
        )
