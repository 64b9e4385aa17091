"""Append-only history of everything that happens to a lead.

Entries are only ever inserted. ``append`` joins the caller's transaction so that a
record mutation and its entry commit together; ``add_note`` is the one entry point
that owns its own commit.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from app import events
from app.metrics import observe_history_entry
from app.pipeline.clock import Clock, not_before, system_clock
from app.pipeline.errors import FieldValidationError, ForbiddenError, NotFoundError
from app.pipeline.models import PipelineHistoryEntry
from app.pipeline.repository import PipelineRepository, read_guard, unit_of_work
from app.pipeline.roles import Actor
from app.pipeline.schemas import HistoryEntryRead
from app.pipeline.stages import HistoryEntryType
from app.pipeline.telemetry import pipeline_operation

logger = logging.getLogger(__name__)


class HistoryLedger:
    def __init__(self, repository: PipelineRepository | None = None, clock: Clock = system_clock) -> None:
        self.repository = repository or PipelineRepository()
        self.clock = clock

    def append(
        self,
        session: Session,
        lead_id: uuid.UUID,
        *,
        entry_type: HistoryEntryType,
        actor: Actor,
        previous_stage: str | None = None,
        new_stage: str | None = None,
        note: str | None = None,
        at: datetime | None = None,
    ) -> PipelineHistoryEntry:
        if self.repository.get_lead(session, lead_id) is None:
            raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})

        created_at = not_before(at or self.clock(), self.repository.last_entry_at(session, lead_id))
        entry = PipelineHistoryEntry(
            id=uuid.uuid4(),
            lead_id=lead_id,
            sequence=self.repository.next_sequence(session, lead_id),
            entry_type=entry_type.value,
            previous_stage=previous_stage,
            new_stage=new_stage,
            actor_id=actor.user_id,
            actor_name=actor.name,
            note=note,
            created_at=created_at,
        )
        session.add(entry)
        session.flush()
        return entry

    def list_for_lead(self, session: Session, lead_id: uuid.UUID) -> list[HistoryEntryRead]:
        """Entries for one lead, newest first."""
        with read_guard(session):
            if self.repository.get_lead(session, lead_id) is None:
                raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
            return [HistoryEntryRead.model_validate(entry) for entry in self.repository.list_history(session, lead_id)]

    def add_note(self, session: Session, lead_id: uuid.UUID, text: str, actor: Actor) -> HistoryEntryRead:
        with pipeline_operation("add_note", actor=actor, lead_id=lead_id) as span:
            if not actor.can_write:
                raise ForbiddenError("role cannot add notes", details={"role": actor.role.value})
            note = (text or "").strip()
            if not note:
                raise FieldValidationError("note text is required", details={"field": "note"})

            with unit_of_work(session):
                entry = self.append(
                    session,
                    lead_id,
                    entry_type=HistoryEntryType.NOTE,
                    actor=actor,
                    note=note,
                )
            with read_guard(session):
                created = HistoryEntryRead.model_validate(entry)
            span.set_attribute("outcome", "committed")

        observe_history_entry(HistoryEntryType.NOTE.value)
        logger.info(
            "pipeline.note.added",
            extra={
                "lead_id": str(lead_id),
                "entry_type": HistoryEntryType.NOTE.value,
                "actor_id": actor.user_id,
            },
        )
        events.publish(
            events.build_envelope(
                "pipeline.lead.note_added",
                actor_user_id=actor.user_id,
                correlation_id=actor.correlation_id,
                payload={"lead_id": str(lead_id), "entry_id": str(created.id)},
            )
        )
        return created
