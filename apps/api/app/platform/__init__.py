from app.platform.security import AuthContext, Operation, authorize, enforce, list_scope

__all__ = [
    "AuthContext",
    "Operation",
    "authorize",
    "enforce",
    "list_scope",
]
