from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import bearer_token, verify_access_token
from app.core.config import get_settings
from app.core.errors import UnauthenticatedError


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, caller: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (caller, route_group)

        with self._lock:
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = _TokenBucketLimiter()
_LIMITED_COLLECTIONS = frozenset({"leads", "opportunities"})


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-caller token buckets for lead and opportunity writes."""

    mutating_methods = {"POST", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        route_group = _resolve_route_group(request.url.path)
        if route_group is None:
            return await call_next(request)

        allowed, retry_after = _limiter.take(
            caller=_resolve_caller(request),
            route_group=route_group,
            capacity=settings.rate_limit_mutations_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many requests",
                "details": {"route_group": route_group},
                "retryable": True,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str | None:
    """Bucket name for a limited path, or None when the path is not limited.

    Conversions draw from their own bucket so bulk lead edits cannot starve them.
    """

    parts = [part for part in path.split("/") if part]
    if len(parts) < 2 or parts[0] != "api" or parts[1] not in _LIMITED_COLLECTIONS:
        return None
    if parts[1] == "leads" and parts[-1] == "convert":
        return "leads.convert"
    return parts[1]


def _resolve_caller(request: Request) -> str:
    try:
        return f"user:{verify_access_token(bearer_token(request)).sub}"
    except UnauthenticatedError:
        host = request.client.host if request.client else "unknown"
        return f"anonymous:{host}"


def reset_rate_limiter() -> None:
    _limiter.clear()
