from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _record(request: Request, status_code: int, started: float, *, failed: bool = False) -> None:
    # The route template is only known once the request has been dispatched.
    path = resolve_http_path_label(request)
    elapsed = time.perf_counter() - started
    observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)

    if failed:
        level = logging.ERROR
    elif status_code >= 500:
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(
        level,
        "http.error" if failed else "http.request",
        exc_info=failed,
        extra={
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(elapsed * 1000, 2),
            "user_id": getattr(request.state, "user_id", None),
        },
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _record(request, 500, started, failed=True)
            raise
        _record(request, response.status_code, started)
        return response
