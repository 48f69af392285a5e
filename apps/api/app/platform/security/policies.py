from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock
from typing import Protocol

from app.core.errors import ForbiddenError
from app.core.rbac import Capability, capabilities_for
from app.metrics import observe_authz_decision
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.authz")


class Operation(StrEnum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LIST = "list"
    CONVERT = "convert"
    MANAGE_USERS = "manage_users"


class DenyReason(StrEnum):
    ROLE_NOT_RECOGNIZED = "role_not_recognized"
    ADMIN_REQUIRED = "admin_required"
    NOT_OWNER = "not_owner"


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason) -> Decision:
        return cls(allowed=False, reason=reason)


class PolicyBackend(Protocol):
    """Pluggable decision function consulted before every entity operation."""

    def decide(self, ctx: AuthContext, operation: Operation, owner_id: uuid.UUID | None) -> Decision:
        ...


class RoleCapabilityPolicy:
    """Role + ownership policy.

    Managers and admins act on any owner's entities; reps only on their own,
    except for create and the self-scoped list, which any recognized role may
    perform. Unrecognized roles are denied everything.
    """

    def decide(self, ctx: AuthContext, operation: Operation, owner_id: uuid.UUID | None) -> Decision:
        capabilities = capabilities_for(ctx.role)
        if not capabilities:
            return Decision.deny(DenyReason.ROLE_NOT_RECOGNIZED)

        if operation == Operation.MANAGE_USERS:
            if Capability.MANAGE_USERS in capabilities:
                return Decision.allow()
            return Decision.deny(DenyReason.ADMIN_REQUIRED)

        if Capability.ANY_ENTITIES in capabilities:
            return Decision.allow()

        if operation == Operation.CREATE:
            return Decision.allow()
        if operation == Operation.LIST and owner_id is None:
            return Decision.allow()
        if owner_id is not None and owner_id == ctx.user_id:
            return Decision.allow()
        return Decision.deny(DenyReason.NOT_OWNER)


_POLICY_BACKEND: PolicyBackend = RoleCapabilityPolicy()
# Never equal to a real user id; asks whether the caller may see other owners' rows.
_FOREIGN_OWNER = uuid.UUID(int=0)
_POLICY_LOCK = Lock()


def get_policy_backend() -> PolicyBackend:
    """Get the active policy backend instance."""

    return _POLICY_BACKEND


def set_policy_backend(backend: PolicyBackend) -> None:
    """Set the active policy backend instance."""

    global _POLICY_BACKEND
    with _POLICY_LOCK:
        _POLICY_BACKEND = backend


def authorize(ctx: AuthContext, operation: Operation, owner_id: uuid.UUID | None = None) -> Decision:
    decision = get_policy_backend().decide(ctx, operation, owner_id)
    observe_authz_decision(operation=operation.value, allowed=decision.allowed)
    if not decision.allowed:
        logger.info(
            "authz.denied",
            extra={
                "user_id": str(ctx.user_id),
                "role": ctx.role,
                "operation": operation.value,
                "reason": decision.reason.value if decision.reason else None,
            },
        )
    return decision


def enforce(ctx: AuthContext, operation: Operation, owner_id: uuid.UUID | None = None) -> None:
    decision = authorize(ctx, operation, owner_id)
    if not decision.allowed:
        raise ForbiddenError(f"operation '{operation.value}' is not permitted", details={"reason": decision.reason})


def list_scope(ctx: AuthContext) -> uuid.UUID | None:
    """Owner id that list queries must be restricted to, or None for every owner."""

    enforce(ctx, Operation.LIST)
    foreign = get_policy_backend().decide(ctx, Operation.LIST, _FOREIGN_OWNER)
    if foreign.allowed:
        return None
    return ctx.user_id
