from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from app.context import get_correlation_id
from app.core.errors import PipelineError, StoreUnavailableError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    retryable: bool
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    retryable: bool = False,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        retryable=retryable,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__, headers=headers)


def pipeline_error_response(request: Request, exc: PipelineError) -> JSONResponse:
    headers = None
    if isinstance(exc, StoreUnavailableError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        retryable=exc.retryable,
        headers=headers,
    )
