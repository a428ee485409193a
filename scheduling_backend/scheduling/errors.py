"""Scheduling error taxonomy.

Every domain failure raised by the scheduling modules is a ``SchedulingError``.
Routes translate them to HTTP responses with ``to_http_exception``; the
orchestrator turns them into ``rejected`` dispatch results.
"""

import uuid

from fastapi import HTTPException, status


class SchedulingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Malformed or out-of-range input, rejected before any mutation."""

    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(SchedulingError):
    """A hold, booking or pause-budget invariant blocks the request."""

    status_code = status.HTTP_409_CONFLICT


class NotFoundError(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN


class ExternalCollaboratorError(SchedulingError):
    """A calendar or video-bot call failed. Never fatal to the caller."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, operation: str, entity_id: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.entity_id = entity_id


class InfrastructureError(SchedulingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = 'Scheduling service temporarily unavailable.'

    def __init__(self, message: str | None = None, correlation_id: str | None = None):
        super().__init__(message or self.default_message)
        self.correlation_id = correlation_id or new_correlation_id()


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def to_http_exception(exc: SchedulingError) -> HTTPException:
    if isinstance(exc, InfrastructureError):
        return HTTPException(
            status_code=exc.status_code,
            detail={'message': exc.message, 'correlation_id': exc.correlation_id},
        )
    return HTTPException(status_code=exc.status_code, detail=exc.message)
