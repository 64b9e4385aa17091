"""Static catalogs for the sales pipeline.

The order of ``STAGES`` is the kanban column order. Nothing here is editable at
runtime; adding a stage or an entry type means changing this module.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True, slots=True)
class Stage:
    id: str
    display_name: str
    color: str


class StageId(str, Enum):
    FIRST_CONTACT = "first-contact"
    QUALIFYING = "qualifying"
    DISQUALIFIED = "disqualified"
    PROPOSAL_SENT = "proposal-sent"
    IN_NEGOTIATION = "in-negotiation"
    PENDING_CLOSURE = "pending-closure"
    APPLICATION = "application"
    WON = "won"
    LOST = "lost"


STAGES: tuple[Stage, ...] = (
    Stage(StageId.FIRST_CONTACT.value, "First Contact", "#6B7280"),
    Stage(StageId.QUALIFYING.value, "Qualifying", "#3B82F6"),
    Stage(StageId.DISQUALIFIED.value, "Disqualified", "#991B1B"),
    Stage(StageId.PROPOSAL_SENT.value, "Proposal Sent", "#F59E0B"),
    Stage(StageId.IN_NEGOTIATION.value, "In Negotiation", "#F97316"),
    Stage(StageId.PENDING_CLOSURE.value, "Pending Closure", "#8B5CF6"),
    Stage(StageId.APPLICATION.value, "Application", "#0EA5E9"),
    Stage(StageId.WON.value, "Won", "#22C55E"),
    Stage(StageId.LOST.value, "Lost", "#EF4444"),
)

STAGE_IDS: tuple[str, ...] = tuple(stage.id for stage in STAGES)
_STAGES_BY_ID = {stage.id: stage for stage in STAGES}

# Stages that can only be entered through a dedicated engine operation.
GATED_STAGES = frozenset({StageId.APPLICATION.value, StageId.WON.value})


class Temperature(str, Enum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"


TEMPERATURE_LABELS = {
    Temperature.COLD.value: "Cold",
    Temperature.WARM.value: "Warm",
    Temperature.HOT.value: "Hot",
}


class NegotiationType(str, Enum):
    RECURRING = "recurring"
    PIX_UPFRONT = "pix-upfront"
    FULL_CARD = "full-card"
    OTHER = "other"


NEGOTIATION_TYPE_LABELS = {
    NegotiationType.RECURRING.value: "Recurring",
    NegotiationType.PIX_UPFRONT.value: "PIX upfront",
    NegotiationType.FULL_CARD.value: "Full card",
    NegotiationType.OTHER.value: "Other",
}


class AttendanceStatus(str, Enum):
    IN_NEGOTIATION = "in-negotiation"
    SALE_CONFIRMED = "sale-confirmed"
    SALE_REFUNDED = "sale-refunded"
    NOT_CLOSED = "not-closed"
    NO_SHOW = "no-show"
    RESCHEDULED = "rescheduled"


ATTENDANCE_STATUS_LABELS = {
    AttendanceStatus.IN_NEGOTIATION.value: "In negotiation",
    AttendanceStatus.SALE_CONFIRMED.value: "Sale confirmed",
    AttendanceStatus.SALE_REFUNDED.value: "Sale refunded",
    AttendanceStatus.NOT_CLOSED.value: "Not closed",
    AttendanceStatus.NO_SHOW.value: "No-show",
    AttendanceStatus.RESCHEDULED.value: "Rescheduled",
}


class HistoryEntryType(str, Enum):
    CREATION = "creation"
    EDIT = "edit"
    STAGE_CHANGE = "stage-change"
    NOTE = "note"
    PAYMENT_CONFIRMED = "payment-confirmed"


# Entry types whose ``new_stage`` reflects the lead's stage at append time.
STAGE_BEARING_ENTRY_TYPES = frozenset(
    {
        HistoryEntryType.CREATION.value,
        HistoryEntryType.STAGE_CHANGE.value,
        HistoryEntryType.PAYMENT_CONFIRMED.value,
    }
)


def is_valid_stage(stage_id: str) -> bool:
    return stage_id in _STAGES_BY_ID


def get_stage(stage_id: str) -> Stage | None:
    return _STAGES_BY_ID.get(stage_id)


def stage_display_name(stage_id: str) -> str:
    stage = _STAGES_BY_ID.get(stage_id)
    return stage.display_name if stage is not None else stage_id


def ordered_stages(stage_ids: frozenset[str] | set[str]) -> list[Stage]:
    return [stage for stage in STAGES if stage.id in stage_ids]
