"""Stage-transition state machine for pipeline leads.

Ordinary moves commit immediately. Entering ``application`` is a two-step flow: the
move is answered with ``needs_closing_data`` and nothing changes until the caller
sends the closing data. ``won`` is only reachable through payment confirmation.

Every committing operation performs one conditional UPDATE on the lead (guarded by
stage and ``row_version``) plus one ledger append, under a single commit.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app import events
from app.metrics import observe_history_entry, observe_stage_transition
from app.pipeline.clock import Clock, not_before, system_clock
from app.pipeline.errors import (
    ConflictError,
    FieldValidationError,
    ForbiddenError,
    InvalidStateError,
    NoOpMoveError,
    NotFoundError,
)
from app.pipeline.ledger import HistoryLedger
from app.pipeline.models import PipelineIdempotencyKey, PipelineLead
from app.pipeline.repository import PipelineRepository, read_guard, unit_of_work
from app.pipeline.roles import Actor
from app.pipeline.schemas import (
    CLOSING_DATA_FIELDS,
    ClosingDataRequest,
    HistoryEntryRead,
    LeadRead,
    MoveOutcome,
)
from app.pipeline.stages import (
    NEGOTIATION_TYPE_LABELS,
    HistoryEntryType,
    StageId,
    is_valid_stage,
)
from app.pipeline.telemetry import pipeline_operation
from app.pipeline.visibility import can_confirm_payment, can_drop_into

logger = logging.getLogger(__name__)

APPLICATION = StageId.APPLICATION.value
WON = StageId.WON.value


def closing_data_note(data: ClosingDataRequest) -> str:
    label = NEGOTIATION_TYPE_LABELS.get(data.negotiation_type, data.negotiation_type)
    note = f"Deal closed: {label}, sale value {data.sale_value:.2f}"
    if data.pending_value:
        note += f", pending {data.pending_value:.2f}"
    if data.payment_terms:
        note += f". Terms: {data.payment_terms}"
    return note


class StageTransitionEngine:
    def __init__(
        self,
        ledger: HistoryLedger,
        repository: PipelineRepository | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.ledger = ledger
        self.repository = repository or PipelineRepository()
        self.clock = clock

    def propose_move(
        self,
        session: Session,
        lead_id: uuid.UUID,
        from_stage: str,
        to_stage: str,
        actor: Actor,
        *,
        idempotency_key: str | None = None,
    ) -> MoveOutcome:
        with pipeline_operation(
            "move",
            actor=actor,
            lead_id=lead_id,
            from_stage=from_stage,
            to_stage=to_stage,
        ) as span:
            for field_name, value in (("from_stage", from_stage), ("to_stage", to_stage)):
                if not is_valid_stage(value):
                    raise FieldValidationError("unknown stage", details={"field": field_name, "value": value})
            if from_stage == to_stage:
                raise NoOpMoveError("lead is already in this stage", details={"stage": to_stage})
            if not can_drop_into(actor.role, to_stage):
                raise ForbiddenError(
                    "role cannot move leads into this stage",
                    details={"role": actor.role.value, "stage": to_stage},
                )

            endpoint = f"pipeline.lead.move:{lead_id}"
            request_hash = self._request_hash({"from_stage": from_stage, "to_stage": to_stage})
            stored = self._load_idempotent(session, endpoint, idempotency_key, request_hash, actor)
            if stored is not None:
                span.set_attribute("outcome", "replayed")
                return stored

            lead = self._get_lead(session, lead_id)
            if to_stage == WON:
                raise InvalidStateError("won is reached by confirming payment", details={"stage": to_stage})
            if lead.current_stage != from_stage:
                raise ConflictError(
                    "lead is no longer in the source stage",
                    details={"expected": from_stage, "actual": lead.current_stage},
                )

            if to_stage == APPLICATION:
                span.set_attribute("outcome", "needs_closing_data")
                logger.info(
                    "pipeline.move.needs_closing_data",
                    extra={"lead_id": str(lead_id), "from_stage": from_stage, "to_stage": to_stage},
                )
                return MoveOutcome(
                    status="needs_closing_data",
                    lead=LeadRead.model_validate(lead),
                    required_fields=list(CLOSING_DATA_FIELDS),
                )

            with unit_of_work(session):
                now = self._timestamp(session, lead)
                self._apply(
                    session,
                    lead,
                    expected_stage=from_stage,
                    values={"current_stage": to_stage, "stage_updated_at": now, "updated_at": now},
                )
                entry = self.ledger.append(
                    session,
                    lead.id,
                    entry_type=HistoryEntryType.STAGE_CHANGE,
                    actor=actor,
                    previous_stage=from_stage,
                    new_stage=to_stage,
                    at=now,
                )
                outcome = self._committed(session, lead, entry)
                self._store_idempotent(session, endpoint, idempotency_key, request_hash, actor, outcome)
            span.set_attribute("outcome", "committed")

        self._after_transition(HistoryEntryType.STAGE_CHANGE, lead_id, from_stage, to_stage, actor)
        events.publish(
            events.build_envelope(
                "pipeline.lead.stage_changed",
                actor_user_id=actor.user_id,
                correlation_id=actor.correlation_id,
                payload={"lead_id": str(lead_id), "from_stage": from_stage, "to_stage": to_stage},
            )
        )
        return outcome

    def confirm_closing_data(
        self,
        session: Session,
        lead_id: uuid.UUID,
        data: ClosingDataRequest,
        actor: Actor,
        *,
        idempotency_key: str | None = None,
    ) -> MoveOutcome:
        with pipeline_operation(
            "closing_data",
            actor=actor,
            lead_id=lead_id,
            from_stage=data.from_stage,
            to_stage=APPLICATION,
        ) as span:
            if not can_drop_into(actor.role, APPLICATION):
                raise ForbiddenError(
                    "role cannot move leads into application",
                    details={"role": actor.role.value, "stage": APPLICATION},
                )

            endpoint = f"pipeline.lead.closing_data:{lead_id}"
            request_hash = self._request_hash(data.model_dump(mode="json"))
            stored = self._load_idempotent(session, endpoint, idempotency_key, request_hash, actor)
            if stored is not None:
                span.set_attribute("outcome", "replayed")
                return stored

            lead = self._get_lead(session, lead_id)
            if lead.current_stage == APPLICATION:
                raise NoOpMoveError("lead is already in application", details={"stage": APPLICATION})
            if data.from_stage is not None:
                if not is_valid_stage(data.from_stage):
                    raise FieldValidationError(
                        "unknown stage",
                        details={"field": "from_stage", "value": data.from_stage},
                    )
                if data.from_stage != lead.current_stage:
                    raise ConflictError(
                        "lead is no longer in the source stage",
                        details={"expected": data.from_stage, "actual": lead.current_stage},
                    )

            from_stage = lead.current_stage
            with unit_of_work(session):
                now = self._timestamp(session, lead)
                self._apply(
                    session,
                    lead,
                    expected_stage=from_stage,
                    values={
                        "current_stage": APPLICATION,
                        "stage_updated_at": now,
                        "updated_at": now,
                        "sale_value": data.sale_value,
                        "pending_value": data.pending_value,
                        "negotiation_type": data.negotiation_type,
                        "payment_terms": data.payment_terms,
                    },
                )
                entry = self.ledger.append(
                    session,
                    lead.id,
                    entry_type=HistoryEntryType.STAGE_CHANGE,
                    actor=actor,
                    previous_stage=from_stage,
                    new_stage=APPLICATION,
                    note=closing_data_note(data),
                    at=now,
                )
                outcome = self._committed(session, lead, entry)
                self._store_idempotent(session, endpoint, idempotency_key, request_hash, actor, outcome)
            span.set_attribute("outcome", "committed")

        self._after_transition(HistoryEntryType.STAGE_CHANGE, lead_id, from_stage, APPLICATION, actor)
        events.publish(
            events.build_envelope(
                "pipeline.lead.stage_changed",
                actor_user_id=actor.user_id,
                correlation_id=actor.correlation_id,
                payload={
                    "lead_id": str(lead_id),
                    "from_stage": from_stage,
                    "to_stage": APPLICATION,
                    "sale_value": data.sale_value,
                    "pending_value": data.pending_value,
                    "negotiation_type": data.negotiation_type,
                },
            )
        )
        return outcome

    def confirm_payment(
        self,
        session: Session,
        lead_id: uuid.UUID,
        actor: Actor,
        *,
        idempotency_key: str | None = None,
    ) -> MoveOutcome:
        with pipeline_operation(
            "confirm_payment",
            actor=actor,
            lead_id=lead_id,
            from_stage=APPLICATION,
            to_stage=WON,
        ) as span:
            if not can_confirm_payment(actor.role):
                raise ForbiddenError("role cannot confirm payments", details={"role": actor.role.value})

            endpoint = f"pipeline.lead.confirm_payment:{lead_id}"
            request_hash = self._request_hash({"lead_id": str(lead_id)})
            stored = self._load_idempotent(session, endpoint, idempotency_key, request_hash, actor)
            if stored is not None:
                span.set_attribute("outcome", "replayed")
                return stored

            lead = self._get_lead(session, lead_id)
            if lead.payment_confirmed:
                raise InvalidStateError("payment already confirmed", details={"lead_id": str(lead_id)})
            if lead.current_stage != APPLICATION:
                raise InvalidStateError(
                    "payment can only be confirmed in application",
                    details={"stage": lead.current_stage},
                )

            with unit_of_work(session):
                now = self._timestamp(session, lead)
                self._apply(
                    session,
                    lead,
                    expected_stage=APPLICATION,
                    require_unconfirmed_payment=True,
                    values={
                        "payment_confirmed": True,
                        "payment_confirmed_at": now,
                        "current_stage": WON,
                        "stage_updated_at": now,
                        "updated_at": now,
                    },
                )
                entry = self.ledger.append(
                    session,
                    lead.id,
                    entry_type=HistoryEntryType.PAYMENT_CONFIRMED,
                    actor=actor,
                    previous_stage=APPLICATION,
                    new_stage=WON,
                    note="Payment confirmed",
                    at=now,
                )
                outcome = self._committed(session, lead, entry)
                self._store_idempotent(session, endpoint, idempotency_key, request_hash, actor, outcome)
            span.set_attribute("outcome", "committed")

        self._after_transition(HistoryEntryType.PAYMENT_CONFIRMED, lead_id, APPLICATION, WON, actor)
        events.publish(
            events.build_envelope(
                "pipeline.lead.payment_confirmed",
                actor_user_id=actor.user_id,
                correlation_id=actor.correlation_id,
                payload={
                    "lead_id": str(lead_id),
                    "sale_value": outcome.lead.sale_value,
                    "confirmed_at": outcome.lead.payment_confirmed_at.isoformat()
                    if outcome.lead.payment_confirmed_at
                    else None,
                },
            )
        )
        return outcome

    def _get_lead(self, session: Session, lead_id: uuid.UUID) -> PipelineLead:
        with read_guard(session):
            lead = self.repository.get_lead(session, lead_id)
        if lead is None:
            raise NotFoundError("lead not found", details={"lead_id": str(lead_id)})
        return lead

    def _timestamp(self, session: Session, lead: PipelineLead) -> datetime:
        return not_before(
            self.clock(),
            lead.updated_at,
            lead.stage_updated_at,
            self.repository.last_entry_at(session, lead.id),
        )

    def _apply(
        self,
        session: Session,
        lead: PipelineLead,
        *,
        expected_stage: str,
        values: dict[str, Any],
        require_unconfirmed_payment: bool = False,
    ) -> None:
        applied = self.repository.conditional_update(
            session,
            lead.id,
            row_version=lead.row_version,
            expected_stage=expected_stage,
            require_unconfirmed_payment=require_unconfirmed_payment,
            values=values,
        )
        if not applied:
            raise ConflictError("lead was modified concurrently", details={"lead_id": str(lead.id)})

    def _committed(self, session: Session, lead: PipelineLead, entry: Any) -> MoveOutcome:
        session.flush()
        session.refresh(lead)
        return MoveOutcome(
            status="committed",
            lead=LeadRead.model_validate(lead),
            history_entry=HistoryEntryRead.model_validate(entry),
        )

    def _after_transition(
        self,
        entry_type: HistoryEntryType,
        lead_id: uuid.UUID,
        from_stage: str,
        to_stage: str,
        actor: Actor,
    ) -> None:
        observe_stage_transition(from_stage, to_stage)
        observe_history_entry(entry_type.value)
        logger.info(
            "pipeline.lead.stage_changed",
            extra={
                "lead_id": str(lead_id),
                "from_stage": from_stage,
                "to_stage": to_stage,
                "entry_type": entry_type.value,
                "outcome": "committed",
                "actor_id": actor.user_id,
                "actor_role": actor.role.value,
            },
        )

    def _request_hash(self, payload: dict[str, Any]) -> str:
        return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()

    def _load_idempotent(
        self,
        session: Session,
        endpoint: str,
        key: str | None,
        request_hash: str,
        actor: Actor,
    ) -> MoveOutcome | None:
        if not key:
            return None
        with read_guard(session):
            record = self.repository.get_idempotency_record(session, endpoint, key)
        if record is None:
            return None
        if record.actor_id != actor.user_id:
            raise ConflictError("idempotency key belongs to another user", details={"idempotency_key": key})
        if record.request_hash != request_hash:
            raise ConflictError("idempotency key payload mismatch", details={"idempotency_key": key})
        return MoveOutcome.model_validate(json.loads(record.response_json))

    def _store_idempotent(
        self,
        session: Session,
        endpoint: str,
        key: str | None,
        request_hash: str,
        actor: Actor,
        outcome: MoveOutcome,
    ) -> None:
        if not key:
            return
        session.add(
            PipelineIdempotencyKey(
                endpoint=endpoint,
                key=key,
                actor_id=actor.user_id,
                request_hash=request_hash,
                response_json=json.dumps(outcome.model_dump(mode="json")),
            )
        )