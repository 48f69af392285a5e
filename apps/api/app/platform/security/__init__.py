from app.platform.security.context import AuthContext
from app.platform.security.policies import (
    Decision,
    DenyReason,
    Operation,
    PolicyBackend,
    RoleCapabilityPolicy,
    authorize,
    enforce,
    get_policy_backend,
    list_scope,
    set_policy_backend,
)

__all__ = [
    "AuthContext",
    "Decision",
    "DenyReason",
    "Operation",
    "PolicyBackend",
    "RoleCapabilityPolicy",
    "authorize",
    "enforce",
    "list_scope",
    "set_policy_backend",
    "get_policy_backend",
]
