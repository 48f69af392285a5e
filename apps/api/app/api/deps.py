from __future__ import annotations

import uuid

from fastapi import Depends, Request

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.errors import UnauthenticatedError
from app.platform.security import AuthContext


def get_current_actor(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> AuthContext:
    """Build the caller context handed to every service call from the verified token."""

    try:
        user_id = uuid.UUID(auth_user.sub)
    except ValueError as exc:
        raise UnauthenticatedError("invalid token subject") from exc

    request.state.user_id = str(user_id)
    return AuthContext(
        user_id=user_id,
        role=auth_user.role,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )
