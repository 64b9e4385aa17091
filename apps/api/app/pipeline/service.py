from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.pipeline.board import BoardProjection, pipeline_stats, project
from app.pipeline.clock import Clock, system_clock
from app.pipeline.engine import StageTransitionEngine
from app.pipeline.ledger import HistoryLedger
from app.pipeline.records import PipelineRecordStore
from app.pipeline.repository import PipelineRepository
from app.pipeline.roles import Actor
from app.pipeline.schemas import (
    BoardFilters,
    ClosingDataRequest,
    HistoryEntryRead,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    MoveOutcome,
    OptionRead,
    PipelineStatsRead,
    StageCatalogRead,
    StageRead,
)
from app.pipeline.stages import ATTENDANCE_STATUS_LABELS, NEGOTIATION_TYPE_LABELS, STAGES, TEMPERATURE_LABELS
from app.pipeline.visibility import can_drop_into, visible_stages


class PipelineService:
    """Entry points used by the HTTP layer; wires the record store, ledger and engine to one clock."""

    def __init__(self, clock: Clock = system_clock) -> None:
        repository = PipelineRepository()
        self.ledger = HistoryLedger(repository=repository, clock=clock)
        self.records = PipelineRecordStore(self.ledger, repository=repository, clock=clock)
        self.engine = StageTransitionEngine(self.ledger, repository=repository, clock=clock)

    def stage_catalog(self, actor: Actor) -> StageCatalogRead:
        visible = visible_stages(actor.role)
        return StageCatalogRead(
            role=actor.role.value,
            stages=[
                StageRead(
                    id=stage.id,
                    display_name=stage.display_name,
                    color=stage.color,
                    position=position,
                    visible=stage.id in visible,
                    can_drop=can_drop_into(actor.role, stage.id),
                )
                for position, stage in enumerate(STAGES)
            ],
            temperatures=[OptionRead(value=value, label=label) for value, label in TEMPERATURE_LABELS.items()],
            negotiation_types=[
                OptionRead(value=value, label=label) for value, label in NEGOTIATION_TYPE_LABELS.items()
            ],
            attendance_statuses=[
                OptionRead(value=value, label=label) for value, label in ATTENDANCE_STATUS_LABELS.items()
            ],
        )

    def create_lead(self, session: Session, actor: Actor, data: LeadCreate | dict[str, Any]) -> LeadRead:
        return self.records.create(session, data, actor)

    def update_lead_fields(
        self,
        session: Session,
        actor: Actor,
        lead_id: uuid.UUID,
        changes: LeadUpdate | dict[str, Any],
    ) -> LeadRead:
        return self.records.update(session, lead_id, changes, actor)

    def get_lead(self, session: Session, lead_id: uuid.UUID) -> LeadRead:
        return self.records.get(session, lead_id)

    def list_leads(
        self,
        session: Session,
        *,
        stage: str | None = None,
        closer_id: str | None = None,
    ) -> list[LeadRead]:
        return self.records.list_all(
            session,
            limit=get_settings().pipeline_board_max_leads,
            stage=stage,
            closer_id=closer_id,
        )

    def closer_agenda(self, session: Session, call_date: date, *, closer_id: str | None = None) -> list[LeadRead]:
        return self.records.list_calls(session, call_date, closer_id=closer_id)

    def propose_move(
        self,
        session: Session,
        actor: Actor,
        lead_id: uuid.UUID,
        from_stage: str,
        to_stage: str,
        *,
        idempotency_key: str | None = None,
    ) -> MoveOutcome:
        return self.engine.propose_move(
            session, lead_id, from_stage, to_stage, actor, idempotency_key=idempotency_key
        )

    def confirm_closing_data(
        self,
        session: Session,
        actor: Actor,
        lead_id: uuid.UUID,
        data: ClosingDataRequest,
        *,
        idempotency_key: str | None = None,
    ) -> MoveOutcome:
        return self.engine.confirm_closing_data(session, lead_id, data, actor, idempotency_key=idempotency_key)

    def confirm_payment(
        self,
        session: Session,
        actor: Actor,
        lead_id: uuid.UUID,
        *,
        idempotency_key: str | None = None,
    ) -> MoveOutcome:
        return self.engine.confirm_payment(session, lead_id, actor, idempotency_key=idempotency_key)

    def add_note(self, session: Session, actor: Actor, lead_id: uuid.UUID, text: str) -> HistoryEntryRead:
        return self.ledger.add_note(session, lead_id, text, actor)

    def get_lead_history(self, session: Session, lead_id: uuid.UUID) -> list[HistoryEntryRead]:
        return self.ledger.list_for_lead(session, lead_id)

    def project_board(
        self,
        session: Session,
        actor: Actor,
        filters: BoardFilters | None = None,
    ) -> BoardProjection:
        return project(self.list_leads(session), actor.role, filters)

    def stats(self, session: Session) -> PipelineStatsRead:
        return pipeline_stats(self.list_leads(session))
