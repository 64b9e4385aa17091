from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    TEAM_LEAD = "team_lead"
    CLOSER = "closer"
    SDR = "sdr"
    CLIENT = "client"
    USER = "user"


# Highest first; used when a token carries several roles.
ROLE_PRECEDENCE: tuple[Role, ...] = (
    Role.ADMIN,
    Role.TEAM_LEAD,
    Role.CLOSER,
    Role.SDR,
    Role.CLIENT,
    Role.USER,
)

WRITER_ROLES = frozenset({Role.ADMIN, Role.TEAM_LEAD, Role.CLOSER, Role.SDR})
TRANSFER_ROLES = frozenset({Role.ADMIN, Role.TEAM_LEAD})


def parse_role(value: str | Role | None) -> Role:
    if isinstance(value, Role):
        return value
    if not value:
        return Role.USER
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        return Role.USER


def resolve_role(raw_roles: Iterable[str]) -> Role:
    normalized = {str(item).strip().lower() for item in raw_roles}
    for role in ROLE_PRECEDENCE:
        if role.value in normalized:
            return role
    return Role.USER


@dataclass(frozen=True)
class Actor:
    user_id: str
    name: str
    role: Role
    correlation_id: str | None = None

    @property
    def can_write(self) -> bool:
        return self.role in WRITER_ROLES

    @property
    def can_transfer(self) -> bool:
        return self.role in TRANSFER_ROLES
