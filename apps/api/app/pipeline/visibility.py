from __future__ import annotations

from app.pipeline.roles import Role
from app.pipeline.stages import STAGE_IDS, Stage, StageId, ordered_stages

ALL_STAGES = frozenset(STAGE_IDS)

CLOSER_STAGES = frozenset(
    {
        StageId.PROPOSAL_SENT.value,
        StageId.IN_NEGOTIATION.value,
        StageId.PENDING_CLOSURE.value,
        StageId.APPLICATION.value,
        StageId.WON.value,
        StageId.LOST.value,
    }
)

SDR_STAGES = frozenset(
    {
        StageId.FIRST_CONTACT.value,
        StageId.QUALIFYING.value,
        StageId.PROPOSAL_SENT.value,
    }
)

_VISIBLE_STAGES: dict[Role, frozenset[str]] = {
    Role.ADMIN: ALL_STAGES,
    Role.TEAM_LEAD: ALL_STAGES,
    Role.CLOSER: CLOSER_STAGES,
    Role.SDR: SDR_STAGES,
}

_DROP_ROLES = frozenset({Role.ADMIN, Role.TEAM_LEAD, Role.CLOSER, Role.SDR})


def visible_stages(role: Role) -> frozenset[str]:
    """Stages a role may see on the board. Roles without a rule see everything."""
    return _VISIBLE_STAGES.get(role, ALL_STAGES)


def can_drop_into(role: Role, stage_id: str) -> bool:
    if role not in _DROP_ROLES:
        return False
    return stage_id in visible_stages(role)


def visible_stage_list(role: Role) -> list[Stage]:
    return ordered_stages(visible_stages(role))


def can_confirm_payment(role: Role) -> bool:
    return can_drop_into(role, StageId.WON.value)
