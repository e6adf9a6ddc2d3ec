from __future__ import annotations

from datetime import datetime

from fastapi import HTTPException, status


class HemolinkError(Exception):
    """Base class for failures surfaced by the matching core."""


class NotFoundError(HemolinkError, LookupError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class InputValidationError(HemolinkError, ValueError):
    pass


class InvalidStateError(HemolinkError):
    pass


class CollaboratorUnavailableError(HemolinkError, LookupError):
    def __init__(self, collaborator: str, detail: str) -> None:
        super().__init__(f"{collaborator} unavailable: {detail}")
        self.collaborator = collaborator


class ForbiddenError(HemolinkError, PermissionError):
    pass


def lock_conflict_message(locked_by: str | None, retry_after_minutes: int) -> str:
    unit = "minute" if retry_after_minutes == 1 else "minutes"
    if locked_by is None:
        return f"This request is being updated right now. Please try again in {retry_after_minutes} {unit}."
    return f"This request is currently locked by another donor. Please try again in {retry_after_minutes} {unit}."


class LockConflictError(HemolinkError):
    def __init__(self, locked_by: str | None, retry_after_minutes: int, expires_at: datetime | None = None) -> None:
        super().__init__(lock_conflict_message(locked_by, retry_after_minutes))
        self.locked_by = locked_by
        self.retry_after_minutes = retry_after_minutes
        self.expires_at = expires_at


def http_exception(exc: HemolinkError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, InputValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, LockConflictError):
        return HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail={
                "message": str(exc),
                "locked_by": exc.locked_by,
                "retry_after_minutes": exc.retry_after_minutes,
            },
        )
    if isinstance(exc, CollaboratorUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
