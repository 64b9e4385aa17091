"""create pipeline tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_STAGES = (
    "first-contact",
    "qualifying",
    "disqualified",
    "proposal-sent",
    "in-negotiation",
    "pending-closure",
    "application",
    "won",
    "lost",
)


def upgrade() -> None:
    stage_list = ", ".join(f"'{stage}'" for stage in _STAGES)
    op.create_table(
        "pipeline_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("segment", sa.Text(), nullable=True),
        sa.Column("lead_source", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("next_step", sa.Text(), nullable=True),
        sa.Column("next_contact_date", sa.Date(), nullable=True),
        sa.Column("temperature", sa.String(length=16), nullable=False, server_default="warm"),
        sa.Column("current_stage", sa.String(length=32), nullable=False),
        sa.Column("stage_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("potential_value", sa.Numeric(18, 2), nullable=True),
        sa.Column("sale_value", sa.Numeric(18, 2), nullable=True),
        sa.Column("pending_value", sa.Numeric(18, 2), nullable=True),
        sa.Column("negotiation_type", sa.String(length=32), nullable=True),
        sa.Column("payment_terms", sa.Text(), nullable=True),
        sa.Column("payment_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("owner_name", sa.Text(), nullable=False),
        sa.Column("closer_owner_id", sa.String(length=128), nullable=True),
        sa.Column("closer_owner_name", sa.Text(), nullable=True),
        sa.Column("client_id", sa.String(length=128), nullable=True),
        sa.Column("call_date", sa.Date(), nullable=True),
        sa.Column("call_time", sa.String(length=5), nullable=True),
        sa.Column("sdr_id", sa.String(length=128), nullable=True),
        sa.Column("sdr_name", sa.Text(), nullable=True),
        sa.Column("closer_id", sa.String(length=128), nullable=True),
        sa.Column("closer_name", sa.Text(), nullable=True),
        sa.Column("origin_id", sa.String(length=128), nullable=True),
        sa.Column("origin_name", sa.Text(), nullable=True),
        sa.Column("attendance_status", sa.String(length=32), nullable=False, server_default="in-negotiation"),
        sa.Column("sdr_info", sa.Text(), nullable=True),
        sa.Column("recording_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(f"current_stage IN ({stage_list})", name="ck_pipeline_lead_stage"),
    )
    op.create_index("ix_pipeline_lead_stage", "pipeline_lead", ["current_stage"], unique=False)
    op.create_index("ix_pipeline_lead_owner_created", "pipeline_lead", ["owner_id", "created_at"], unique=False)
    op.create_index("ix_pipeline_lead_closer_call", "pipeline_lead", ["closer_id", "call_date"], unique=False)

    op.create_table(
        "pipeline_history_entry",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(length=32), nullable=False),
        sa.Column("previous_stage", sa.String(length=32), nullable=True),
        sa.Column("new_stage", sa.String(length=32), nullable=True),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("actor_name", sa.Text(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lead_id"], ["pipeline_lead.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("lead_id", "sequence", name="uq_pipeline_history_lead_sequence"),
    )
    op.create_index(
        "ix_pipeline_history_lead_created",
        "pipeline_history_entry",
        ["lead_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "pipeline_idempotency_key",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("endpoint", sa.String(length=128), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("endpoint", "key", name="uq_pipeline_idempotency_endpoint_key"),
    )


def downgrade() -> None:
    op.drop_table("pipeline_idempotency_key")
    op.drop_index("ix_pipeline_history_lead_created", table_name="pipeline_history_entry")
    op.drop_table("pipeline_history_entry")
    op.drop_index("ix_pipeline_lead_closer_call", table_name="pipeline_lead")
    op.drop_index("ix_pipeline_lead_owner_created", table_name="pipeline_lead")
    op.drop_index("ix_pipeline_lead_stage", table_name="pipeline_lead")
    op.drop_table("pipeline_lead")
