"""Error translation helpers for the moderation admin API."""

from __future__ import annotations

from fastapi import HTTPException, status

from modconsole.moderation.domain import errors


def to_http_error(exc: Exception) -> HTTPException:
    """Translate domain exceptions to FastAPI HTTP errors."""
    if isinstance(exc, errors.ValidationError):
        return HTTPException(status_code=exc.status_code, detail={"detail": exc.detail, "errors": list(exc.errors)})
    if isinstance(exc, errors.StepFailedError):
        return HTTPException(
            status_code=exc.status_code,
            detail={"detail": exc.detail, "step": exc.step, "completed_steps": list(exc.completed_steps)},
        )
    if isinstance(exc, errors.ModerationError):
        return HTTPException(status_code=exc.status_code, detail=exc.detail)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
