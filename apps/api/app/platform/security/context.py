from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Verified caller identity passed explicitly into every core operation."""

    user_id: uuid.UUID
    role: str
    correlation_id: str | None = None
