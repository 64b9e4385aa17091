from __future__ import annotations

import json
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.pipeline.stages import STAGE_IDS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_STAGE_LIST_SQL = ", ".join(f"'{stage_id}'" for stage_id in STAGE_IDS)


class PipelineLead(Base):
    __tablename__ = "pipeline_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    segment: Mapped[str | None] = mapped_column(Text, nullable=True)
    lead_source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_step: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_contact_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    temperature: Mapped[str] = mapped_column(String(16), nullable=False, default="warm", server_default="warm")
    current_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    stage_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    potential_value: Mapped[float | None] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=True)
    sale_value: Mapped[float | None] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=True)
    pending_value: Mapped[float | None] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=True)
    negotiation_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    owner_name: Mapped[str] = mapped_column(Text, nullable=False)
    closer_owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    closer_owner_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    call_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    call_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    sdr_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sdr_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    closer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    closer_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    origin_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    origin_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    attendance_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="in-negotiation", server_default="in-negotiation"
    )
    sdr_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    recording_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        CheckConstraint(f"current_stage IN ({_STAGE_LIST_SQL})", name="ck_pipeline_lead_stage"),
        Index("ix_pipeline_lead_stage", "current_stage"),
        Index("ix_pipeline_lead_owner_created", "owner_id", "created_at"),
        Index("ix_pipeline_lead_closer_call", "closer_id", "call_date"),
    )


class PipelineHistoryEntry(Base):
    __tablename__ = "pipeline_history_entry"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_lead.id", ondelete="RESTRICT"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_name: Mapped[str] = mapped_column(Text, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("lead_id", "sequence", name="uq_pipeline_history_lead_sequence"),
        Index("ix_pipeline_history_lead_created", "lead_id", "created_at"),
    )


class PipelineIdempotencyKey(Base):
    __tablename__ = "pipeline_idempotency_key"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = mapped_column(String(128), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    response_json: Mapped[str] = mapped_column(Text, nullable=False, default=lambda: json.dumps({}))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("endpoint", "key", name="uq_pipeline_idempotency_endpoint_key"),
    )
