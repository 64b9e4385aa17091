from __future__ import annotations

import pytest

from app.pipeline.roles import Actor, Role, parse_role, resolve_role
from app.pipeline.stages import (
    GATED_STAGES,
    STAGE_IDS,
    STAGES,
    get_stage,
    is_valid_stage,
    stage_display_name,
)
from app.pipeline.visibility import (
    ALL_STAGES,
    can_confirm_payment,
    can_drop_into,
    visible_stage_list,
    visible_stages,
)


def test_registry_is_in_kanban_order() -> None:
    assert STAGE_IDS == (
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
    assert len({stage.color for stage in STAGES}) == len(STAGES)
    assert GATED_STAGES == {"application", "won"}


def test_stage_lookup_helpers() -> None:
    assert is_valid_stage("proposal-sent")
    assert not is_valid_stage("aplicacao")
    assert get_stage("won") is not None
    assert get_stage("missing") is None
    assert stage_display_name("in-negotiation") == "In Negotiation"
    assert stage_display_name("missing") == "missing"


@pytest.mark.parametrize("role", [Role.ADMIN, Role.TEAM_LEAD])
def test_managers_see_and_drop_into_every_stage(role: Role) -> None:
    assert visible_stages(role) == ALL_STAGES
    assert all(can_drop_into(role, stage_id) for stage_id in STAGE_IDS)


def test_closer_visibility() -> None:
    assert visible_stages(Role.CLOSER) == {
        "proposal-sent",
        "in-negotiation",
        "pending-closure",
        "application",
        "won",
        "lost",
    }
    assert can_drop_into(Role.CLOSER, "lost")
    assert not can_drop_into(Role.CLOSER, "first-contact")
    assert not can_drop_into(Role.CLOSER, "disqualified")


def test_sdr_visibility() -> None:
    assert visible_stages(Role.SDR) == {"first-contact", "qualifying", "proposal-sent"}
    assert can_drop_into(Role.SDR, "qualifying")
    assert not can_drop_into(Role.SDR, "won")
    assert [stage.id for stage in visible_stage_list(Role.SDR)] == ["first-contact", "qualifying", "proposal-sent"]


@pytest.mark.parametrize("role", [Role.CLIENT, Role.USER])
def test_non_writer_roles_see_everything_but_drop_nowhere(role: Role) -> None:
    assert visible_stages(role) == ALL_STAGES
    assert not any(can_drop_into(role, stage_id) for stage_id in STAGE_IDS)


def test_payment_confirmation_roles() -> None:
    assert can_confirm_payment(Role.ADMIN)
    assert can_confirm_payment(Role.TEAM_LEAD)
    assert can_confirm_payment(Role.CLOSER)
    assert not can_confirm_payment(Role.SDR)
    assert not can_confirm_payment(Role.USER)


def test_role_resolution_prefers_highest_role() -> None:
    assert resolve_role(["sdr", "closer"]) == Role.CLOSER
    assert resolve_role(["USER", "Team_Lead"]) == Role.TEAM_LEAD
    assert resolve_role(["guest"]) == Role.USER
    assert resolve_role([]) == Role.USER
    assert parse_role("ADMIN") == Role.ADMIN
    assert parse_role("vendedor") == Role.USER
    assert parse_role(None) == Role.USER


def test_actor_capabilities() -> None:
    assert Actor(user_id="a", name="A", role=Role.SDR).can_write
    assert not Actor(user_id="a", name="A", role=Role.SDR).can_transfer
    assert Actor(user_id="a", name="A", role=Role.TEAM_LEAD).can_transfer
    assert not Actor(user_id="a", name="A", role=Role.CLIENT).can_write
