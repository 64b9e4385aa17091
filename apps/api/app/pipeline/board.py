"""Kanban projection and statistics over a snapshot of leads.

Everything here is a pure function of its arguments; callers read the snapshot
(``PipelineRecordStore.list_all``) and pass it in.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from app.pipeline.roles import Role
from app.pipeline.schemas import (
    BoardColumnRead,
    BoardFilters,
    BoardRead,
    LeadRead,
    PipelineStatsRead,
    StageStatsRead,
)
from app.pipeline.stages import STAGES, StageId, get_stage
from app.pipeline.visibility import visible_stage_list


def matches_filters(lead: LeadRead, filters: BoardFilters) -> bool:
    if filters.search:
        needle = filters.search.strip().casefold()
        if needle and needle not in lead.name.casefold() and needle not in lead.phone.casefold():
            return False
    if filters.temperature and lead.temperature != filters.temperature:
        return False
    if filters.owner_id and lead.owner_id != filters.owner_id:
        return False
    return True


def apply_filters(leads: Iterable[LeadRead], filters: BoardFilters | None) -> list[LeadRead]:
    if filters is None:
        return list(leads)
    return [lead for lead in leads if matches_filters(lead, filters)]


def _lead_value(lead: LeadRead) -> float:
    return float(lead.potential_value or 0)


@dataclass
class BoardProjection:
    role: Role
    filters: BoardFilters
    columns: dict[str, list[LeadRead]] = field(default_factory=dict)

    def per_stage_total_value(self, stage_id: str) -> float:
        return sum((_lead_value(lead) for lead in self.columns.get(stage_id, [])), 0.0)

    @property
    def total_leads(self) -> int:
        return sum(len(leads) for leads in self.columns.values())

    def to_read(self) -> BoardRead:
        columns: list[BoardColumnRead] = []
        for stage_id, leads in self.columns.items():
            stage = get_stage(stage_id)
            columns.append(
                BoardColumnRead(
                    stage_id=stage_id,
                    display_name=stage.display_name if stage else stage_id,
                    color=stage.color if stage else "",
                    count=len(leads),
                    total_value=self.per_stage_total_value(stage_id),
                    leads=leads,
                )
            )
        return BoardRead(
            role=self.role.value,
            filters=self.filters,
            total_leads=self.total_leads,
            columns=columns,
        )


def project(leads: Sequence[LeadRead], role: Role, filters: BoardFilters | None = None) -> BoardProjection:
    """Group leads by stage in kanban order, keeping only the stages ``role`` may see.

    Within a column leads keep their input order.
    """
    active_filters = filters or BoardFilters()
    columns: dict[str, list[LeadRead]] = {stage.id: [] for stage in visible_stage_list(role)}
    for lead in apply_filters(leads, active_filters):
        bucket = columns.get(lead.current_stage)
        if bucket is not None:
            bucket.append(lead)
    return BoardProjection(role=role, filters=active_filters, columns=columns)


def pipeline_stats(leads: Sequence[LeadRead]) -> PipelineStatsRead:
    counts = {stage.id: 0 for stage in STAGES}
    values = {stage.id: 0.0 for stage in STAGES}
    for lead in leads:
        if lead.current_stage in counts:
            counts[lead.current_stage] += 1
            values[lead.current_stage] += _lead_value(lead)

    total = len(leads)
    won = counts[StageId.WON.value]
    return PipelineStatsRead(
        total_leads=total,
        total_value=sum(values.values(), 0.0),
        won_count=won,
        conversion_rate=(won / total * 100) if total else 0.0,
        stages=[
            StageStatsRead(
                stage_id=stage.id,
                display_name=stage.display_name,
                count=counts[stage.id],
                total_value=values[stage.id],
            )
            for stage in STAGES
        ],
    )
