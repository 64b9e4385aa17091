from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.metrics import observe_history_entry
from app.pipeline.clock import Clock, not_before, system_clock
from app.pipeline.errors import ConflictError, FieldValidationError, ForbiddenError, NotFoundError
from app.pipeline.ledger import HistoryLedger
from app.pipeline.models import PipelineLead
from app.pipeline.repository import PipelineRepository, read_guard, unit_of_work
from app.pipeline.roles import Actor
from app.pipeline.schemas import LeadCreate, LeadRead, LeadUpdate
from app.pipeline.stages import GATED_STAGES, HistoryEntryType, is_valid_stage
from app.pipeline.telemetry import pipeline_operation
from app.pipeline.visibility import can_drop_into

logger = logging.getLogger(__name__)

CREATION_NOTE = "Lead added to pipeline"

# Only the transition engine may write these.
ENGINE_OWNED_FIELDS = frozenset({"current_stage", "stage_updated_at", "payment_confirmed", "payment_confirmed_at"})
REQUIRED_FIELDS = frozenset({"name", "phone"})
OWNER_FIELDS = frozenset({"owner_id", "owner_name"})
# Columns with a storage default; an update may change them but never clear them.
NON_NULLABLE_FIELDS = frozenset({"temperature", "attendance_status"})


def _validation_details(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


class PipelineRecordStore:
    """Authoritative lead records and their non-stage mutations."""

    def __init__(
        self,
        ledger: HistoryLedger,
        repository: PipelineRepository | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.ledger = ledger
        self.repository = repository or PipelineRepository()
        self.clock = clock

    def create(self, session: Session, data: LeadCreate | dict[str, Any], actor: Actor) -> LeadRead:
        with pipeline_operation("create_lead", actor=actor) as span:
            if not actor.can_write:
                raise ForbiddenError("role cannot create leads", details={"role": actor.role.value})
            dto = self._parse(LeadCreate, data)

            stage = dto.current_stage or get_settings().pipeline_default_stage
            if not is_valid_stage(stage):
                raise FieldValidationError("unknown stage", details={"field": "current_stage", "value": stage})
            if stage in GATED_STAGES:
                raise FieldValidationError(
                    "leads cannot be created in a gated stage",
                    details={"field": "current_stage", "value": stage},
                )
            if dto.current_stage is not None and not can_drop_into(actor.role, stage):
                raise ForbiddenError(
                    "role cannot place leads in this stage",
                    details={"role": actor.role.value, "stage": stage},
                )

            now = not_before(self.clock())
            lead = PipelineLead(
                id=uuid.uuid4(),
                **dto.model_dump(exclude={"current_stage"}),
                current_stage=stage,
                stage_updated_at=now,
                payment_confirmed=False,
                payment_confirmed_at=None,
                owner_id=actor.user_id,
                owner_name=actor.name,
                created_at=now,
                updated_at=now,
                row_version=1,
            )
            with unit_of_work(session):
                session.add(lead)
                session.flush()
                self.ledger.append(
                    session,
                    lead.id,
                    entry_type=HistoryEntryType.CREATION,
                    actor=actor,
                    previous_stage=None,
                    new_stage=stage,
                    note=CREATION_NOTE,
                    at=now,
                )
            with read_guard(session):
                created = LeadRead.model_validate(lead)
            span.set_attribute("lead_id", str(created.id))
            span.set_attribute("to_stage", stage)
            span.set_attribute("outcome", "committed")

        observe_history_entry(HistoryEntryType.CREATION.value)
        logger.info(
            "pipeline.lead.created",
            extra={"lead_id": str(created.id), "to_stage": stage, "actor_id": actor.user_id},
        )
        events.publish(
            events.build_envelope(
                "pipeline.lead.created",
                actor_user_id=actor.user_id,
                correlation_id=actor.correlation_id,
                payload={"lead_id": str(created.id), "stage": stage, "owner_id": created.owner_id},
            )
        )
        return created

    def update(
        self,
        session: Session,
        lead_id: uuid.UUID,
        changes: LeadUpdate | dict[str, Any],
        actor: Actor,
    ) -> LeadRead:
        with pipeline_operation("update_lead", actor=actor, lead_id=lead_id) as span:
            if isinstance(changes, dict):
                blocked = sorted(ENGINE_OWNED_FIELDS.intersection(changes))
                if blocked:
                    raise FieldValidationError(
                        "stage and payment fields change only through stage transitions",
                        details={"fields": blocked},
                    )
            if not actor.can_write:
                raise ForbiddenError("role cannot edit leads", details={"role": actor.role.value})
            dto = self._parse(LeadUpdate, changes)
            requested = dto.model_dump(exclude_unset=True)

            nulled = sorted(
                name
                for name in REQUIRED_FIELDS | OWNER_FIELDS | NON_NULLABLE_FIELDS
                if name in requested and requested[name] is None
            )
            if nulled:
                raise FieldValidationError("required fields cannot be cleared", details={"fields": nulled})

            with read_guard(session):
                lead = self.repository.get_lead(session, lead_id)
            if lead is None:
                raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})

            changed = {name: value for name, value in requested.items() if getattr(lead, name) != value}
            if OWNER_FIELDS.intersection(changed) and not actor.can_transfer:
                raise ForbiddenError("role cannot transfer lead ownership", details={"role": actor.role.value})
            if not changed:
                span.set_attribute("outcome", "unchanged")
                return LeadRead.model_validate(lead)

            changed_fields = sorted(changed)
            with unit_of_work(session):
                now = not_before(
                    self.clock(),
                    lead.updated_at,
                    self.repository.last_entry_at(session, lead.id),
                )
                updated = self.repository.conditional_update(
                    session,
                    lead.id,
                    row_version=lead.row_version,
                    values={**changed, "updated_at": now},
                )
                if not updated:
                    raise ConflictError("lead was modified concurrently", details={"lead_id": str(lead_id)})
                self.ledger.append(
                    session,
                    lead.id,
                    entry_type=HistoryEntryType.EDIT,
                    actor=actor,
                    note="Updated fields: " + ", ".join(changed_fields),
                    at=now,
                )
            with read_guard(session):
                session.refresh(lead)
                result = LeadRead.model_validate(lead)
            span.set_attribute("outcome", "committed")

        observe_history_entry(HistoryEntryType.EDIT.value)
        logger.info(
            "pipeline.lead.updated",
            extra={"lead_id": str(lead_id), "entry_type": HistoryEntryType.EDIT.value, "actor_id": actor.user_id},
        )
        events.publish(
            events.build_envelope(
                "pipeline.lead.updated",
                actor_user_id=actor.user_id,
                correlation_id=actor.correlation_id,
                payload={"lead_id": str(lead_id), "fields": changed_fields},
            )
        )
        return result

    def get(self, session: Session, lead_id: uuid.UUID) -> LeadRead:
        with read_guard(session):
            lead = self.repository.get_lead(session, lead_id)
        if lead is None:
            raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
        return LeadRead.model_validate(lead)

    def list_all(
        self,
        session: Session,
        *,
        limit: int | None = None,
        stage: str | None = None,
        closer_id: str | None = None,
    ) -> list[LeadRead]:
        """Every lead, newest first, optionally narrowed to one stage and/or one closer."""
        if stage is not None and not is_valid_stage(stage):
            raise FieldValidationError("unknown stage", details={"field": "stage", "value": stage})
        with read_guard(session):
            leads = self.repository.list_leads(session, limit=limit, stage=stage, closer_id=closer_id)
            return [LeadRead.model_validate(lead) for lead in leads]

    def list_calls(self, session: Session, call_date: date, *, closer_id: str | None = None) -> list[LeadRead]:
        """Leads with a call booked on ``call_date``, earliest slot first."""
        with read_guard(session):
            leads = self.repository.list_calls(session, call_date=call_date, closer_id=closer_id)
            return [LeadRead.model_validate(lead) for lead in leads]

    @staticmethod
    def _parse(model: type[LeadCreate] | type[LeadUpdate], data: Any) -> Any:
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise FieldValidationError("invalid lead fields", details=_validation_details(exc)) from exc
