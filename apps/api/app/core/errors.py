from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for every failure the core hands back to the caller layer."""

    code = "pipeline_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None, *, details: Any = None) -> None:
        self.message = message or self.code.replace("_", " ")
        self.details = details
        super().__init__(self.message)


class UnauthenticatedError(PipelineError):
    code = "unauthenticated"
    status_code = 401


class ForbiddenError(PipelineError):
    code = "forbidden"
    status_code = 403


class NotFoundError(PipelineError):
    code = "not_found"
    status_code = 404


class InvalidStatusError(PipelineError):
    code = "invalid_status"
    status_code = 422


class InvalidStageError(PipelineError):
    code = "invalid_stage"
    status_code = 422


class InvalidValueError(PipelineError):
    code = "invalid_value"
    status_code = 422


class AlreadyConvertedError(PipelineError):
    code = "already_converted"
    status_code = 409


class ConflictError(PipelineError):
    code = "conflict"
    status_code = 409


class EmailAlreadyRegisteredError(PipelineError):
    code = "email_already_registered"
    status_code = 409


class StoreUnavailableError(PipelineError):
    """Transient backing-store failure; the caller may retry with backoff."""

    code = "store_unavailable"
    status_code = 503
    retryable = True
    retry_after_seconds = 1


class InvalidRoleError(PipelineError):
    code = "invalid_role"
    status_code = 422
