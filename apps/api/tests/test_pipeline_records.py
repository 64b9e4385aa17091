from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, build_engine
from app.pipeline.errors import ConflictError, FieldValidationError, ForbiddenError, NotFoundError
from app.pipeline.models import PipelineLead
from app.pipeline.records import CREATION_NOTE
from app.pipeline.repository import unit_of_work
from app.pipeline.roles import Actor, Role
from app.pipeline.schemas import LeadCreate
from app.pipeline.service import PipelineService
from app.pipeline.stages import HistoryEntryType


ADMIN = Actor(user_id="admin-1", name="Ana Admin", role=Role.ADMIN)
TEAM_LEAD = Actor(user_id="lead-1", name="Lia Lead", role=Role.TEAM_LEAD)
CLOSER = Actor(user_id="closer-1", name="Caio Closer", role=Role.CLOSER)
SDR = Actor(user_id="sdr-1", name="Sofia SDR", role=Role.SDR)
CLIENT = Actor(user_id="client-1", name="Cliente", role=Role.CLIENT)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def service() -> PipelineService:
    return PipelineService()


def test_create_defaults_and_creation_entry(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(
        db_session,
        SDR,
        LeadCreate(name="  Maria Silva ", phone="11999990000", email="maria@example.com", potential_value=1200),
    )

    assert lead.name == "Maria Silva"
    assert lead.current_stage == "first-contact"
    assert lead.temperature == "warm"
    assert lead.owner_id == SDR.user_id
    assert lead.owner_name == SDR.name
    assert lead.payment_confirmed is False
    assert lead.payment_confirmed_at is None
    assert lead.row_version == 1
    assert lead.created_at == lead.updated_at == lead.stage_updated_at

    history = service.get_lead_history(db_session, lead.id)
    assert len(history) == 1
    assert history[0].entry_type == HistoryEntryType.CREATION.value
    assert history[0].previous_stage is None
    assert history[0].new_stage == "first-contact"
    assert history[0].note == CREATION_NOTE

    created_events = [item for item in events.published_events if item["event_type"] == "pipeline.lead.created"]
    assert created_events
    assert created_events[-1]["payload"]["lead_id"] == str(lead.id)


def test_create_uses_configured_default_stage(
    service: PipelineService,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PIPELINE_DEFAULT_STAGE", "qualifying")
    get_settings.cache_clear()

    lead = service.create_lead(db_session, SDR, {"name": "Joao Souza", "phone": "21988887777"})

    assert lead.current_stage == "qualifying"


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "M", "phone": "11999990000"},
        {"name": "   ", "phone": "11999990000"},
        {"name": "Maria", "phone": "1199"},
        {"phone": "11999990000"},
        {"name": "Maria", "phone": "11999990000", "email": "not-an-email"},
        {"name": "Maria", "phone": "11999990000", "potential_value": -1},
        {"name": "Maria", "phone": "11999990000", "temperature": "boiling"},
        {"name": "Maria", "phone": "11999990000", "current_stage": "aplicacao"},
    ],
)
def test_create_rejects_invalid_fields(service: PipelineService, db_session: Session, payload: dict) -> None:
    with pytest.raises(FieldValidationError):
        service.create_lead(db_session, ADMIN, payload)

    assert service.list_leads(db_session) == []


@pytest.mark.parametrize("stage", ["application", "won"])
def test_create_rejects_gated_stages(service: PipelineService, db_session: Session, stage: str) -> None:
    with pytest.raises(FieldValidationError):
        service.create_lead(db_session, ADMIN, {"name": "Maria", "phone": "11999990000", "current_stage": stage})


def test_create_permissions(service: PipelineService, db_session: Session) -> None:
    with pytest.raises(ForbiddenError):
        service.create_lead(db_session, CLIENT, {"name": "Maria", "phone": "11999990000"})
    with pytest.raises(ForbiddenError):
        service.create_lead(
            db_session,
            SDR,
            {"name": "Maria", "phone": "11999990000", "current_stage": "in-negotiation"},
        )

    lead = service.create_lead(
        db_session,
        CLOSER,
        {"name": "Maria", "phone": "11999990000", "current_stage": "in-negotiation"},
    )
    assert lead.current_stage == "in-negotiation"


def test_blank_email_is_stored_as_missing(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria", "phone": "11999990000", "email": ""})

    assert lead.email is None


def test_update_appends_edit_entry(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria Silva", "phone": "11999990000"})

    updated = service.update_lead_fields(
        db_session,
        SDR,
        lead.id,
        {"temperature": "hot", "company": "Acme", "next_contact_date": "2026-03-10"},
    )

    assert updated.temperature == "hot"
    assert updated.company == "Acme"
    assert updated.next_contact_date == date(2026, 3, 10)
    assert updated.current_stage == lead.current_stage
    assert updated.row_version == lead.row_version + 1

    history = service.get_lead_history(db_session, lead.id)
    assert [entry.entry_type for entry in history] == ["edit", "creation"]
    assert history[0].previous_stage is None
    assert history[0].new_stage is None
    assert history[0].note == "Updated fields: company, next_contact_date, temperature"
    assert any(item["event_type"] == "pipeline.lead.updated" for item in events.published_events)


def test_update_without_changes_is_a_no_op(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria Silva", "phone": "11999990000"})

    same = service.update_lead_fields(db_session, SDR, lead.id, {"name": "Maria Silva"})
    empty = service.update_lead_fields(db_session, SDR, lead.id, {})

    assert same == lead
    assert empty == lead
    assert len(service.get_lead_history(db_session, lead.id)) == 1


@pytest.mark.parametrize(
    "changes",
    [
        {"current_stage": "won"},
        {"payment_confirmed": True},
        {"stage_updated_at": "2026-01-01T00:00:00Z"},
        {"name": None},
        {"temperature": None},
        {"attendance_status": None},
        {"attendance_status": "ghosted"},
        {"call_time": "25:00"},
        {"phone": "123"},
        {"sale_value": -10},
        {"unknown_field": "x"},
    ],
)
def test_update_rejects_invalid_changes(service: PipelineService, db_session: Session, changes: dict) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria Silva", "phone": "11999990000"})

    with pytest.raises(FieldValidationError):
        service.update_lead_fields(db_session, ADMIN, lead.id, changes)

    assert service.get_lead(db_session, lead.id) == lead
    assert len(service.get_lead_history(db_session, lead.id)) == 1


def test_storage_constraint_violations_are_validation_errors(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria Silva", "phone": "11999990000"})

    with pytest.raises(FieldValidationError) as excinfo:
        with unit_of_work(db_session):
            db_session.execute(update(PipelineLead).where(PipelineLead.id == lead.id).values(temperature=None))

    assert excinfo.type is not ConflictError
    assert excinfo.value.status_code == 422
    assert service.get_lead(db_session, lead.id).temperature == "warm"


def test_update_permissions_and_ownership_transfer(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria Silva", "phone": "11999990000"})

    with pytest.raises(ForbiddenError):
        service.update_lead_fields(db_session, CLIENT, lead.id, {"company": "Acme"})
    with pytest.raises(ForbiddenError):
        service.update_lead_fields(db_session, SDR, lead.id, {"owner_id": "sdr-2", "owner_name": "Other SDR"})
    with pytest.raises(NotFoundError):
        service.update_lead_fields(db_session, SDR, uuid.uuid4(), {"company": "Acme"})

    transferred = service.update_lead_fields(
        db_session,
        TEAM_LEAD,
        lead.id,
        {"owner_id": "sdr-2", "owner_name": "Other SDR", "closer_owner_id": "closer-1", "closer_owner_name": "Caio"},
    )
    assert transferred.owner_id == "sdr-2"
    assert transferred.closer_owner_id == "closer-1"


def test_list_all_is_newest_first(db_session: Session) -> None:
    ticks = iter(datetime(2026, 3, 2, 9, minute, tzinfo=timezone.utc) for minute in range(10))
    service = PipelineService(clock=lambda: next(ticks))
    first = service.create_lead(db_session, SDR, {"name": "First Lead", "phone": "11999990001"})
    second = service.create_lead(db_session, SDR, {"name": "Second Lead", "phone": "11999990002"})

    leads = service.list_leads(db_session)

    assert [lead.id for lead in leads] == [second.id, first.id]


def test_call_and_attendance_fields_round_trip(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(
        db_session,
        SDR,
        {
            "name": "Maria Silva",
            "phone": "11999990000",
            "client_id": "cli-42",
            "call_date": "2026-03-12",
            "call_time": "14:30",
            "sdr_id": "sdr-1",
            "sdr_name": "Sofia SDR",
            "closer_id": "closer-1",
            "closer_name": "Caio Closer",
            "origin_id": "org-ads",
            "origin_name": "Paid ads",
            "sdr_info": "Owns two clinics",
        },
    )

    assert lead.attendance_status == "in-negotiation"
    assert lead.call_date == date(2026, 3, 12)
    assert lead.call_time == "14:30"
    assert lead.origin_name == "Paid ads"

    updated = service.update_lead_fields(
        db_session,
        CLOSER,
        lead.id,
        {"attendance_status": "rescheduled", "call_time": "16:00", "recording_url": "https://rec.example/1"},
    )

    assert updated.attendance_status == "rescheduled"
    assert updated.call_time == "16:00"
    assert updated.recording_url == "https://rec.example/1"
    history = service.get_lead_history(db_session, lead.id)
    assert history[0].note == "Updated fields: attendance_status, call_time, recording_url"


def test_list_filters_by_stage_and_closer(service: PipelineService, db_session: Session) -> None:
    mine = service.create_lead(
        db_session, SDR, {"name": "Mine Lead", "phone": "11999990001", "closer_id": "closer-1"}
    )
    other = service.create_lead(
        db_session,
        SDR,
        {"name": "Other Lead", "phone": "11999990002", "closer_id": "closer-2", "current_stage": "qualifying"},
    )

    assert [lead.id for lead in service.list_leads(db_session, closer_id="closer-1")] == [mine.id]
    assert [lead.id for lead in service.list_leads(db_session, stage="qualifying")] == [other.id]
    assert service.list_leads(db_session, stage="qualifying", closer_id="closer-1") == []
    with pytest.raises(FieldValidationError):
        service.list_leads(db_session, stage="aplicacao")


def test_closer_agenda_orders_calls_by_time(service: PipelineService, db_session: Session) -> None:
    def booked(name: str, call_date: str, call_time: str, closer_id: str) -> uuid.UUID:
        payload = {
            "name": name,
            "phone": "11999990000",
            "call_date": call_date,
            "call_time": call_time,
            "closer_id": closer_id,
        }
        return service.create_lead(db_session, SDR, payload).id

    late = booked("Late Call", "2026-03-12", "17:00", "closer-1")
    early = booked("Early Call", "2026-03-12", "09:00", "closer-1")
    booked("Other Closer", "2026-03-12", "10:00", "closer-2")
    booked("Other Day", "2026-03-13", "08:00", "closer-1")

    agenda = service.closer_agenda(db_session, date(2026, 3, 12), closer_id="closer-1")

    assert [lead.id for lead in agenda] == [early, late]
    assert len(service.closer_agenda(db_session, date(2026, 3, 12))) == 3


def test_notes_are_appended_to_the_ledger(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria Silva", "phone": "11999990000"})

    entry = service.add_note(db_session, SDR, lead.id, "  Called, asked to follow up tomorrow ")

    assert entry.entry_type == "note"
    assert entry.note == "Called, asked to follow up tomorrow"
    assert entry.previous_stage is None
    assert entry.new_stage is None
    assert entry.sequence == 2
    assert service.get_lead(db_session, lead.id) == lead
    assert any(item["event_type"] == "pipeline.lead.note_added" for item in events.published_events)


def test_note_failures(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria Silva", "phone": "11999990000"})

    with pytest.raises(FieldValidationError):
        service.add_note(db_session, SDR, lead.id, "   ")
    with pytest.raises(ForbiddenError):
        service.add_note(db_session, CLIENT, lead.id, "hello")
    with pytest.raises(NotFoundError):
        service.add_note(db_session, SDR, uuid.uuid4(), "hello")

    assert len(service.get_lead_history(db_session, lead.id)) == 1


def test_ledger_rejects_unknown_leads(service: PipelineService, db_session: Session) -> None:
    with pytest.raises(NotFoundError):
        service.get_lead_history(db_session, uuid.uuid4())
    with pytest.raises(NotFoundError):
        service.ledger.append(db_session, uuid.uuid4(), entry_type=HistoryEntryType.NOTE, actor=SDR, note="x")
    with pytest.raises(NotFoundError):
        service.get_lead(db_session, uuid.uuid4())


def test_history_reads_are_repeatable(service: PipelineService, db_session: Session) -> None:
    lead = service.create_lead(db_session, SDR, {"name": "Maria Silva", "phone": "11999990000"})
    service.add_note(db_session, SDR, lead.id, "first")

    snapshot = service.get_lead_history(db_session, lead.id)
    service.add_note(db_session, SDR, lead.id, "second")

    assert len(snapshot) == 2
    assert service.get_lead_history(db_session, lead.id)[1:] == snapshot


def test_history_blocks_lead_deletion_on_sqlite_engine(service: PipelineService) -> None:
    engine = build_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        lead = service.create_lead(session, SDR, LeadCreate(name="Maria Silva", phone="11999990000"))

        session.delete(session.get(PipelineLead, lead.id))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

        assert session.get(PipelineLead, lead.id) is not None
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
