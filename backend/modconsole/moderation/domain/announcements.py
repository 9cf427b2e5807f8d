"""Announcement publication lifecycle: admin transitions and clock sweeps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Collection, List, Mapping

from modconsole.moderation.domain.errors import (
    InvalidTransitionError,
    ModerationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from modconsole.moderation.domain.models import Announcement, AnnouncementStatus
from modconsole.moderation.domain.repository import ModerationStore, new_id
from modconsole.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_REMOVABLE = frozenset(
    {
        AnnouncementStatus.PENDING,
        AnnouncementStatus.SCHEDULED,
        AnnouncementStatus.ACTIVE,
        AnnouncementStatus.EXPIRED,
    }
)


@dataclass(slots=True)
class EvaluationResult:
    expired: List[str] = field(default_factory=list)
    activated: List[str] = field(default_factory=list)


@dataclass
class AnnouncementLifecycleManager:
    store: ModerationStore

    async def submit(
        self,
        *,
        title: str,
        start_date: datetime,
        end_date: datetime,
        created_by: str | None = None,
        department: str = "",
        body: str = "",
        is_urgent: bool = False,
        now: datetime | None = None,
    ) -> Announcement:
        if not title or not title.strip():
            raise ValidationError("announcement_title_required")
        now = now or datetime.now(timezone.utc)
        announcement = Announcement(
            id=new_id(),
            title=title.strip(),
            start_date=start_date,
            end_date=end_date,
            department=department,
            body=body,
            is_urgent=is_urgent,
            created_by=created_by,
            submitted_at=now,
            updated_at=now,
        )
        return await self.store.create_announcement(announcement)

    async def approve(self, announcement_id: str, *, now: datetime | None = None) -> Announcement:
        now = now or datetime.now(timezone.utc)
        return await self._transition(
            announcement_id,
            expected={AnnouncementStatus.PENDING},
            target=AnnouncementStatus.SCHEDULED,
            stamps={"approved_at": now, "updated_at": now},
            metric="approved",
        )

    async def decline(self, announcement_id: str, *, now: datetime | None = None) -> Announcement:
        now = now or datetime.now(timezone.utc)
        return await self._transition(
            announcement_id,
            expected={AnnouncementStatus.PENDING},
            target=AnnouncementStatus.DECLINED,
            stamps={"rejected_at": now, "updated_at": now},
            metric="declined",
        )

    async def remove(self, announcement_id: str, *, now: datetime | None = None) -> Announcement:
        now = now or datetime.now(timezone.utc)
        return await self._transition(
            announcement_id,
            expected=_REMOVABLE,
            target=AnnouncementStatus.REMOVED,
            stamps={"removed_at": now, "updated_at": now},
            metric="removed",
        )

    async def sweep_activation(self, *, now: datetime | None = None) -> List[str]:
        """Move due ``scheduled`` announcements to ``active`` in one batch."""
        return await self._sweep(
            from_status=AnnouncementStatus.SCHEDULED,
            to_status=AnnouncementStatus.ACTIVE,
            due_field="start_date",
            metric="activated",
            now=now or datetime.now(timezone.utc),
        )

    async def sweep_expiry(self, *, now: datetime | None = None) -> List[str]:
        """Move due ``active`` announcements to ``expired`` in one batch."""
        return await self._sweep(
            from_status=AnnouncementStatus.ACTIVE,
            to_status=AnnouncementStatus.EXPIRED,
            due_field="end_date",
            metric="expired",
            now=now or datetime.now(timezone.utc),
        )

    async def evaluate_now(self, *, now: datetime | None = None) -> EvaluationResult:
        # expiry first so an announcement advances at most one edge per call
        now = now or datetime.now(timezone.utc)
        expired = await self.sweep_expiry(now=now)
        activated = await self.sweep_activation(now=now)
        return EvaluationResult(expired=expired, activated=activated)

    async def _transition(
        self,
        announcement_id: str,
        *,
        expected: Collection[AnnouncementStatus],
        target: AnnouncementStatus,
        stamps: Mapping[str, datetime],
        metric: str,
    ) -> Announcement:
        current = await self.store.get_announcement(announcement_id)
        if current is None:
            raise NotFoundError(f"announcement_not_found:{announcement_id}")
        if current.status not in expected:
            raise InvalidTransitionError("announcement", announcement_id, current.status.value, target.value)
        updated = await self.store.update_announcement_if(
            announcement_id,
            expected=expected,
            status=target,
            stamps=stamps,
        )
        if updated is None:
            latest = await self.store.get_announcement(announcement_id)
            status = latest.status.value if latest else current.status.value
            raise InvalidTransitionError("announcement", announcement_id, status, target.value)
        obs_metrics.inc_announcement_transition(metric)
        logger.info(
            "announcement transitioned",
            extra={"announcement_id": announcement_id, "from": current.status.value, "to": target.value},
        )
        return updated

    async def _sweep(
        self,
        *,
        from_status: AnnouncementStatus,
        to_status: AnnouncementStatus,
        due_field: str,
        metric: str,
        now: datetime,
    ) -> List[str]:
        try:
            due = await self.store.list_announcements_due(from_status, due_field=due_field, now=now)
            if not due:
                return []
            moved = await self.store.transition_announcements(
                [item.id for item in due],
                from_status=from_status,
                to_status=to_status,
                due_field=due_field,
                now=now,
            )
        except ModerationError:
            logger.exception("announcement sweep failed", extra={"transition": metric})
            raise
        except Exception as exc:
            logger.exception("announcement sweep failed", extra={"transition": metric})
            raise TransientStoreError(f"announcement_sweep_failed:{metric}") from exc
        if moved:
            obs_metrics.inc_announcement_transition(metric, len(moved))
            logger.info(
                "announcement sweep applied",
                extra={"transition": metric, "count": len(moved), "announcement_ids": moved},
            )
        return moved


__all__ = ["AnnouncementLifecycleManager", "EvaluationResult"]
