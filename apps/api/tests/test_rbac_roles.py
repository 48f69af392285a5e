from __future__ import annotations

import pytest

from app.core.rbac import ROLE_CAPABILITIES, Capability, Role, capabilities_for, parse_role, role_grants


def test_roles_form_strict_superset_chain() -> None:
    rep = set(capabilities_for(Role.REP))
    manager = set(capabilities_for(Role.MANAGER))
    admin = set(capabilities_for(Role.ADMIN))

    assert rep < manager < admin


def test_only_admin_manages_users() -> None:
    holders = [role for role, capabilities in ROLE_CAPABILITIES.items() if Capability.MANAGE_USERS in capabilities]
    assert holders == [Role.ADMIN]


def test_capabilities_are_ordered() -> None:
    assert capabilities_for("admin") == (
        Capability.OWN_ENTITIES,
        Capability.ANY_ENTITIES,
        Capability.MANAGE_USERS,
    )


@pytest.mark.parametrize("raw", ["rep", "REP", " Manager ", "admin"])
def test_parse_role_is_case_insensitive(raw: str) -> None:
    assert parse_role(raw) is not None


@pytest.mark.parametrize("raw", ["", "superuser", "system.admin", None, 3])
def test_unknown_roles_grant_nothing(raw: object) -> None:
    assert parse_role(raw) is None  # type: ignore[arg-type]
    assert capabilities_for(raw) == ()  # type: ignore[arg-type]
    assert not role_grants(raw, Capability.OWN_ENTITIES)  # type: ignore[arg-type]
