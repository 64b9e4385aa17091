from __future__ import annotations

import uuid
from datetime import date
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.context import get_request_context
from app.core.database import get_db
from app.pipeline.errors import PipelineError
from app.pipeline.roles import Actor, resolve_role
from app.pipeline.schemas import (
    BoardFilters,
    BoardRead,
    ClosingDataRequest,
    HistoryEntryRead,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    MoveOutcome,
    MoveRequest,
    NoteCreate,
    PipelineStatsRead,
    StageCatalogRead,
    TemperatureValue,
)
from app.pipeline.service import PipelineService

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])
service = PipelineService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    context = get_request_context(request)
    correlation_id = get_correlation_id() or (context.correlation_id if context is not None else None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def pipeline_error_response(request: Request, exc: PipelineError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_actor(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> Actor:
    context = get_request_context(request)
    role = resolve_role(auth_user.roles)
    if context is not None:
        context.actor_role = role.value
    return Actor(
        user_id=auth_user.sub,
        name=auth_user.name or auth_user.sub,
        role=role,
        correlation_id=get_correlation_id() or (context.correlation_id if context is not None else None),
    )


@router.get("/stages", response_model=StageCatalogRead)
def list_stages(actor: Actor = Depends(get_current_actor)) -> StageCatalogRead:
    return service.stage_catalog(actor)


@router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return service.create_lead(db, actor, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    stage: str | None = Query(default=None),
    closer_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[LeadRead] | JSONResponse:
    try:
        return service.list_leads(db, stage=stage, closer_id=closer_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/calls", response_model=list[LeadRead])
def closer_calls(
    request: Request,
    call_date: date = Query(alias="date"),
    closer_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[LeadRead] | JSONResponse:
    try:
        return service.closer_agenda(db, call_date, closer_id=closer_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return service.get_lead(db, lead_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return service.update_lead_fields(db, actor, lead_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.post("/leads/{lead_id}/move", response_model=MoveOutcome)
def move_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: MoveRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> MoveOutcome | JSONResponse:
    try:
        return service.propose_move(
            db,
            actor,
            lead_id,
            dto.from_stage,
            dto.to_stage,
            idempotency_key=idempotency_key,
        )
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.post("/leads/{lead_id}/closing-data", response_model=MoveOutcome)
def submit_closing_data(
    request: Request,
    lead_id: uuid.UUID,
    dto: ClosingDataRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> MoveOutcome | JSONResponse:
    try:
        return service.confirm_closing_data(db, actor, lead_id, dto, idempotency_key=idempotency_key)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.post("/leads/{lead_id}/confirm-payment", response_model=MoveOutcome)
def confirm_payment(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> MoveOutcome | JSONResponse:
    try:
        return service.confirm_payment(db, actor, lead_id, idempotency_key=idempotency_key)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.post("/leads/{lead_id}/notes", response_model=HistoryEntryRead, status_code=status.HTTP_201_CREATED)
def add_note(
    request: Request,
    lead_id: uuid.UUID,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> HistoryEntryRead | JSONResponse:
    try:
        return service.add_note(db, actor, lead_id, dto.note)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/leads/{lead_id}/history", response_model=list[HistoryEntryRead])
def lead_history(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[HistoryEntryRead] | JSONResponse:
    try:
        return service.get_lead_history(db, lead_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/board", response_model=BoardRead)
def board(
    request: Request,
    search: str | None = Query(default=None),
    temperature: TemperatureValue | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> BoardRead | JSONResponse:
    try:
        filters = BoardFilters(search=search, temperature=temperature, owner_id=owner_id)
        return service.project_board(db, actor, filters).to_read()
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@router.get("/stats", response_model=PipelineStatsRead)
def stats(
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PipelineStatsRead | JSONResponse:
    try:
        return service.stats(db)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
