"""Error taxonomy for the moderation lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from fastapi import status


class ModerationError(Exception):
    """Base class for moderation engine errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: str = "moderation_error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class ValidationError(ModerationError):
    """Malformed input or out-of-range values, rejected before any write."""

    status_code = 422
    detail = "validation_error"

    def __init__(self, detail: str | None = None, *, errors: Sequence[str] = ()) -> None:
        super().__init__(detail)
        self.errors: tuple[str, ...] = tuple(errors) or ((detail,) if detail else ())


class InvalidTransitionError(ValidationError):
    """Raised when a lifecycle edge is not legal from the current state."""

    status_code = status.HTTP_409_CONFLICT
    detail = "invalid_transition"

    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(f"{entity}_{current}_to_{target}_not_allowed")
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


class NotFoundError(ModerationError):
    """Referenced entity is absent."""

    status_code = status.HTTP_404_NOT_FOUND
    detail = "not_found"


class ForbiddenError(ModerationError):
    """Raised when the external capability check denies an actor."""

    status_code = status.HTTP_403_FORBIDDEN
    detail = "forbidden"


class TransientStoreError(ModerationError):
    """Store or network unavailable; safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = "store_unavailable"


@dataclass(frozen=True)
class ChunkFailure:
    index: int
    post_ids: tuple[str, ...]
    error: str


class PartialBatchError(ModerationError):
    """Some chunks of a batched operation failed; applied effects stand."""

    status_code = status.HTTP_207_MULTI_STATUS
    detail = "partial_batch_failure"

    def __init__(
        self,
        failures: Sequence[ChunkFailure],
        *,
        resolved_report_ids: Sequence[str] = (),
        outcome: Any = None,
    ) -> None:
        super().__init__(f"{len(failures)} chunk(s) failed")
        self.failures: tuple[ChunkFailure, ...] = tuple(failures)
        self.resolved_report_ids: tuple[str, ...] = tuple(resolved_report_ids)
        self.outcome = outcome

    @property
    def failed_post_ids(self) -> tuple[str, ...]:
        return tuple(post_id for failure in self.failures for post_id in failure.post_ids)


class StepFailedError(ModerationError):
    """An ordered multi-step operation halted part way through."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail = "step_failed"

    def __init__(self, step: str, *, completed_steps: Sequence[str] = (), outcome: Any = None) -> None:
        super().__init__(f"{step}_failed")
        self.step = step
        self.completed_steps: tuple[str, ...] = tuple(completed_steps)
        self.outcome = outcome


class PushDeliveryError(Exception):
    """Push transport failure. Never leaves the notification dispatcher."""

    def __init__(self, reason: str, *, permanent: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.permanent = permanent
