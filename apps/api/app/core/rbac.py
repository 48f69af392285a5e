from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    REP = "rep"
    MANAGER = "manager"
    ADMIN = "admin"


class Capability(StrEnum):
    OWN_ENTITIES = "entities.own"
    ANY_ENTITIES = "entities.any"
    MANAGE_USERS = "users.manage"


# Each role holds every capability of the role before it.
ROLE_CAPABILITIES: dict[Role, tuple[Capability, ...]] = {
    Role.REP: (Capability.OWN_ENTITIES,),
    Role.MANAGER: (Capability.OWN_ENTITIES, Capability.ANY_ENTITIES),
    Role.ADMIN: (Capability.OWN_ENTITIES, Capability.ANY_ENTITIES, Capability.MANAGE_USERS),
}


def parse_role(value: str | Role | None) -> Role | None:
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None


def capabilities_for(role: str | Role | None) -> tuple[Capability, ...]:
    parsed = parse_role(role)
    if parsed is None:
        return ()
    return ROLE_CAPABILITIES[parsed]


def role_grants(role: str | Role | None, capability: Capability) -> bool:
    return capability in capabilities_for(role)
