from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


TemperatureValue = Literal["cold", "warm", "hot"]
NegotiationTypeValue = Literal["recurring", "pix-upfront", "full-card", "other"]
AttendanceStatusValue = Literal[
    "in-negotiation", "sale-confirmed", "sale-refunded", "not-closed", "no-show", "rescheduled"
]
MoveStatus = Literal["committed", "needs_closing_data"]

CLOSING_DATA_FIELDS = ["sale_value", "pending_value", "negotiation_type", "payment_terms"]
CALL_TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


def _strip(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class LeadCreate(BaseModel):
    name: str = Field(min_length=2)
    phone: str = Field(min_length=10)
    email: EmailStr | None = None
    company: str | None = None
    segment: str | None = None
    lead_source: str | None = None
    notes: str | None = None
    next_step: str | None = None
    next_contact_date: date | None = None
    temperature: TemperatureValue = "warm"
    current_stage: str | None = None
    potential_value: float | None = Field(default=None, ge=0)
    closer_owner_id: str | None = None
    closer_owner_name: str | None = None
    client_id: str | None = None
    call_date: date | None = None
    call_time: str | None = Field(default=None, pattern=CALL_TIME_PATTERN)
    sdr_id: str | None = None
    sdr_name: str | None = None
    closer_id: str | None = None
    closer_name: str | None = None
    origin_id: str | None = None
    origin_name: str | None = None
    attendance_status: AttendanceStatusValue = "in-negotiation"
    sdr_info: str | None = None
    recording_url: str | None = None

    @field_validator("name", "phone", mode="before")
    @classmethod
    def strip_required(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("call_time", mode="before")
    @classmethod
    def blank_call_time_is_none(cls, value: Any) -> Any:
        return _blank_to_none(_strip(value))


class LeadUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=2)
    phone: str | None = Field(default=None, min_length=10)
    email: EmailStr | None = None
    company: str | None = None
    segment: str | None = None
    lead_source: str | None = None
    notes: str | None = None
    next_step: str | None = None
    next_contact_date: date | None = None
    temperature: TemperatureValue | None = None
    potential_value: float | None = Field(default=None, ge=0)
    sale_value: float | None = Field(default=None, ge=0)
    pending_value: float | None = Field(default=None, ge=0)
    negotiation_type: NegotiationTypeValue | None = None
    payment_terms: str | None = None
    owner_id: str | None = None
    owner_name: str | None = None
    closer_owner_id: str | None = None
    closer_owner_name: str | None = None
    client_id: str | None = None
    call_date: date | None = None
    call_time: str | None = Field(default=None, pattern=CALL_TIME_PATTERN)
    sdr_id: str | None = None
    sdr_name: str | None = None
    closer_id: str | None = None
    closer_name: str | None = None
    origin_id: str | None = None
    origin_name: str | None = None
    attendance_status: AttendanceStatusValue | None = None
    sdr_info: str | None = None
    recording_url: str | None = None

    @field_validator("name", "phone", mode="before")
    @classmethod
    def strip_required(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("call_time", mode="before")
    @classmethod
    def blank_call_time_is_none(cls, value: Any) -> Any:
        return _blank_to_none(_strip(value))


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str
    email: str | None
    company: str | None
    segment: str | None
    lead_source: str | None
    notes: str | None
    next_step: str | None
    next_contact_date: date | None
    temperature: str
    current_stage: str
    stage_updated_at: datetime
    potential_value: float | None
    sale_value: float | None
    pending_value: float | None
    negotiation_type: str | None
    payment_terms: str | None
    payment_confirmed: bool
    payment_confirmed_at: datetime | None
    owner_id: str
    owner_name: str
    closer_owner_id: str | None
    closer_owner_name: str | None
    client_id: str | None
    call_date: date | None
    call_time: str | None
    sdr_id: str | None
    sdr_name: str | None
    closer_id: str | None
    closer_name: str | None
    origin_id: str | None
    origin_name: str | None
    attendance_status: str
    sdr_info: str | None
    recording_url: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class HistoryEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    sequence: int
    entry_type: str
    previous_stage: str | None
    new_stage: str | None
    actor_id: str
    actor_name: str
    note: str | None
    created_at: datetime


class MoveRequest(BaseModel):
    from_stage: str = Field(min_length=1)
    to_stage: str = Field(min_length=1)


class ClosingDataRequest(BaseModel):
    sale_value: float = Field(ge=0)
    pending_value: float = Field(default=0, ge=0)
    negotiation_type: NegotiationTypeValue
    payment_terms: str | None = None
    from_stage: str | None = None


class NoteCreate(BaseModel):
    note: str = Field(min_length=1)

    @field_validator("note", mode="before")
    @classmethod
    def strip_note(cls, value: Any) -> Any:
        return _strip(value)


class MoveOutcome(BaseModel):
    status: MoveStatus
    lead: LeadRead
    history_entry: HistoryEntryRead | None = None
    required_fields: list[str] = Field(default_factory=list)


class StageRead(BaseModel):
    id: str
    display_name: str
    color: str
    position: int
    visible: bool
    can_drop: bool


class OptionRead(BaseModel):
    value: str
    label: str


class StageCatalogRead(BaseModel):
    role: str
    stages: list[StageRead]
    temperatures: list[OptionRead]
    negotiation_types: list[OptionRead]
    attendance_statuses: list[OptionRead]


class BoardFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    search: str | None = None
    temperature: TemperatureValue | None = None
    owner_id: str | None = None


class BoardColumnRead(BaseModel):
    stage_id: str
    display_name: str
    color: str
    count: int
    total_value: float
    leads: list[LeadRead]


class BoardRead(BaseModel):
    role: str
    filters: BoardFilters
    total_leads: int
    columns: list[BoardColumnRead]


class StageStatsRead(BaseModel):
    stage_id: str
    display_name: str
    count: int
    total_value: float


class PipelineStatsRead(BaseModel):
    total_leads: int
    total_value: float
    won_count: int
    conversion_rate: float
    stages: list[StageStatsRead]
