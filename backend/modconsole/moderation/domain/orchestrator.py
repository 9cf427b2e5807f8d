"""Cross-cutting moderation flows composed over the lifecycle managers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Protocol, Sequence

from modconsole.moderation.domain.announcements import AnnouncementLifecycleManager, EvaluationResult
from modconsole.moderation.domain.configuration import ConfigurationActor, ConfigurationCache
from modconsole.moderation.domain.errors import PartialBatchError, StepFailedError
from modconsole.moderation.domain.models import (
    Announcement,
    Configuration,
    ConfigurationChangeLog,
    NotificationType,
    Post,
    PostStatus,
    Report,
    ReportStatus,
    User,
)
from modconsole.moderation.domain.notifications import NotificationDispatcher, format_duration
from modconsole.moderation.domain.reports import (
    ReportLifecycleManager,
    ReportProcessingResult,
    ReportStatistics,
    ResolutionOutcome,
)
from modconsole.moderation.domain.repository import ModerationStore, ReportEventSource, Unsubscribe
from modconsole.moderation.domain.rules import BusinessRules
from modconsole.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

URGENT_REVIEW_TITLE = "Urgent Review Required"


class StaffDirectory(Protocol):
    async def is_admin(self, admin_id: str) -> bool:
        ...

    async def list_staff_ids(self) -> Sequence[str]:
        ...


@dataclass
class StaticStaffDirectory:
    """Staff directory backed by a fixed id list, usually from settings."""

    staff_ids: Sequence[str] = ()

    async def is_admin(self, admin_id: str) -> bool:
        return bool(admin_id) and admin_id in self.staff_ids

    async def list_staff_ids(self) -> Sequence[str]:
        return list(self.staff_ids)


def urgent_review_dedupe_key(post_id: str, staff_id: str) -> str:
    return f"urgent_review:{post_id}:{staff_id}"


@dataclass(slots=True)
class SanctionOutcome:
    action: str
    user: User
    notification_id: Optional[str] = None
    resolution: Optional[ResolutionOutcome] = None
    ban_recommended: bool = False
    failed_step: Optional[str] = None


@dataclass(slots=True)
class UrgentItems:
    posts: List[Post] = field(default_factory=list)
    announcements: List[Announcement] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.posts) + len(self.announcements)


class ModerationOrchestrator:
    """Entry point for admin actions and runtime triggers.

    Owns the configuration cache lifecycle and the report-created subscription.
    All writes go through the lifecycle managers.
    """

    def __init__(
        self,
        *,
        cache: ConfigurationCache,
        store: ModerationStore,
        rules: BusinessRules,
        reports: ReportLifecycleManager,
        announcements: AnnouncementLifecycleManager,
        dispatcher: NotificationDispatcher,
        staff: StaffDirectory,
        events: ReportEventSource | None = None,
    ) -> None:
        self.cache = cache
        self.store = store
        self.rules = rules
        self.reports = reports
        self.announcements = announcements
        self.dispatcher = dispatcher
        self.staff = staff
        self._events = events or store
        self._unsubscribe: Unsubscribe | None = None

    async def start(self) -> None:
        await self.cache.start()
        if self._unsubscribe is None:
            self._unsubscribe = await self._events.subscribe_report_created(self.handle_report_created)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            await unsubscribe()
        await self.cache.stop()

    # report flows

    async def submit_report(
        self,
        *,
        reporter_id: str,
        reported_user_id: str,
        post_id: str,
        category: str,
        description: str = "",
    ) -> Report:
        return await self.reports.submit_report(
            reporter_id=reporter_id,
            reported_user_id=reported_user_id,
            post_id=post_id,
            category=category,
            description=description,
        )

    async def handle_report_created(self, report: Report) -> ReportProcessingResult:
        """Event handler for new reports. Failures propagate so the event source can redeliver."""
        try:
            result = await self.reports.process_new_report(report.id)
        except StepFailedError as exc:
            logger.error(
                "report processing halted",
                extra={"report_id": report.id, "step": exc.step, "completed_steps": list(exc.completed_steps)},
            )
            raise
        try:
            await self.ensure_urgent_review(report.post_id)
        except Exception:  # noqa: BLE001
            logger.exception("urgent review check failed", extra={"post_id": report.post_id})
        return result

    async def reconcile_pending_reports(
        self,
        *,
        now: datetime | None = None,
        grace: timedelta = timedelta(minutes=5),
        limit: int = 100,
    ) -> List[str]:
        """Re-run processing for high severity reports still pending after ``grace``.

        Covers events that were never published or whose handler kept failing.
        Returns the ids that were processed this pass.
        """
        now = now or datetime.now(timezone.utc)
        stalled = await self.reports.list_stalled_high_severity(created_before=now - grace, limit=limit)
        processed: List[str] = []
        for report in stalled:
            try:
                await self.reports.process_new_report(report.id, now=now)
            except Exception:  # noqa: BLE001 - left pending for the next pass
                logger.warning("report reconciliation failed", extra={"report_id": report.id}, exc_info=True)
                continue
            processed.append(report.id)
            try:
                await self.ensure_urgent_review(report.post_id)
            except Exception:  # noqa: BLE001
                logger.exception("urgent review check failed", extra={"post_id": report.post_id})
        if processed:
            logger.info("pending reports reconciled", extra={"report_ids": processed})
        return processed

    async def ensure_urgent_review(self, post_id: str) -> List[str]:
        """Surface one urgent notice per staff member when the post's current count is urgent."""
        post = await self.store.get_post(post_id)
        if post is None or post.status in (PostStatus.REMOVED, PostStatus.EXPIRED):
            return []
        info = self.rules.post_moderation_for(post)
        if not info.requires_urgent_review:
            return []
        notification_ids: List[str] = []
        for staff_id in await self.staff.list_staff_ids():
            notification_ids.append(
                await self.dispatcher.dispatch(
                    staff_id,
                    NotificationType.URGENT_REVIEW,
                    URGENT_REVIEW_TITLE,
                    f"A post has received {post.report_count} reports and needs urgent review.",
                    related_post_id=post.id,
                    data={"post_id": post.id, "report_count": post.report_count},
                    dedupe_key=urgent_review_dedupe_key(post.id, staff_id),
                )
            )
        return notification_ids

    async def update_report_status(self, report_id: str, status: ReportStatus | str, *, admin_id: str | None = None) -> Report:
        report = await self.reports.update_status(report_id, status)
        logger.info(
            "report status updated",
            extra={"report_id": report_id, "status": report.status.value, "admin_id": admin_id},
        )
        return report

    async def remove_post(self, post_id: str, *, reason: str, admin_id: str | None = None) -> Post:
        post, transitioned = await self.reports.remove_post(post_id, reason=reason)
        if transitioned:
            logger.info("post removed", extra={"post_id": post_id, "admin_id": admin_id})
        return post

    # sanctions

    async def warn_user(
        self,
        user_id: str,
        *,
        admin_id: str | None = None,
        post_id: str | None = None,
        message: str | None = None,
    ) -> SanctionOutcome:
        now = datetime.now(timezone.utc)
        user = await self.reports.record_warning(user_id, post_id=post_id, now=now)
        outcome = SanctionOutcome(
            action="warn",
            user=user,
            ban_recommended=self.rules.ban_recommended(user.warning_count),
        )
        if outcome.ban_recommended:
            logger.info(
                "warning count reached ban threshold",
                extra={"user_id": user_id, "warning_count": user.warning_count},
            )
        return await self._finish_sanction(
            outcome,
            lambda: self.dispatcher.send_community_warning(
                user_id,
                admin_id=admin_id,
                post_id=post_id,
                message=message,
            ),
            now=now,
        )

    async def suspend_user(
        self,
        user_id: str,
        *,
        reason: str,
        duration_days: int | None = None,
        admin_id: str | None = None,
    ) -> SanctionOutcome:
        days = duration_days if duration_days is not None else self.cache.current().ban_duration_days
        now = datetime.now(timezone.utc)
        user = await self.reports.suspend_user(user_id, duration_days=days, now=now)
        return await self._finish_sanction(
            SanctionOutcome(action="suspend", user=user),
            lambda: self.dispatcher.send_temporary_ban(
                user_id,
                duration=format_duration(days),
                reason=reason,
                admin_id=admin_id,
            ),
            now=now,
        )

    async def ban_user(
        self,
        user_id: str,
        *,
        reason: str,
        duration_days: int | None = None,
        admin_id: str | None = None,
    ) -> SanctionOutcome:
        now = datetime.now(timezone.utc)
        user = await self.reports.ban_user(user_id, duration_days=duration_days, now=now)
        return await self._finish_sanction(
            SanctionOutcome(action="ban", user=user),
            lambda: self.dispatcher.send_permanent_ban(user_id, reason=reason, admin_id=admin_id),
            now=now,
        )

    async def reinstate_user(self, user_id: str, *, admin_id: str | None = None) -> User:
        user = await self.reports.reinstate_user(user_id)
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action="reinstate", result="ok").inc()
        logger.info("user reinstated", extra={"user_id": user_id, "admin_id": admin_id})
        return user

    async def reset_warnings(self, user_id: str, *, admin_id: str | None = None) -> User:
        user = await self.reports.reset_warnings(user_id)
        logger.info("warning count reset", extra={"user_id": user_id, "admin_id": admin_id})
        return user

    async def _finish_sanction(
        self,
        outcome: SanctionOutcome,
        notify: Callable[[], Awaitable[str]],
        *,
        now: datetime,
    ) -> SanctionOutcome:
        # the status change already stands; resolution and notice always run and are reported, not rolled back
        partial: PartialBatchError | None = None
        try:
            outcome.resolution = await self.reports.resolve_for_user(outcome.user.id, now=now)
        except PartialBatchError as exc:
            partial = exc
            outcome.resolution = exc.outcome
            logger.warning(
                "sanction applied with partial report resolution",
                extra={"user_id": outcome.user.id, "failed_post_ids": list(exc.failed_post_ids)},
            )
        try:
            outcome.notification_id = await notify()
        except Exception as exc:
            outcome.failed_step = "notify"
            obs_metrics.MOD_SANCTIONS_TOTAL.labels(action=outcome.action, result="notify_failed").inc()
            logger.exception("sanction notice failed", extra={"user_id": outcome.user.id, "action": outcome.action})
            raise StepFailedError("notify", completed_steps=("sanction", "resolve"), outcome=outcome) from exc
        if partial is not None:
            obs_metrics.MOD_SANCTIONS_TOTAL.labels(action=outcome.action, result="partial").inc()
            raise PartialBatchError(
                partial.failures,
                resolved_report_ids=partial.resolved_report_ids,
                outcome=outcome,
            ) from partial
        obs_metrics.MOD_SANCTIONS_TOTAL.labels(action=outcome.action, result="ok").inc()
        logger.info(
            "sanction applied",
            extra={
                "user_id": outcome.user.id,
                "action": outcome.action,
                "resolved_reports": len(outcome.resolution.resolved_report_ids),
            },
        )
        return outcome

    # announcements

    async def approve_announcement(self, announcement_id: str, *, admin_id: str | None = None) -> Announcement:
        announcement = await self.announcements.approve(announcement_id)
        await self._notify_announcer(announcement, "Your announcement has been approved and will go live as scheduled.", admin_id)
        return announcement

    async def decline_announcement(self, announcement_id: str, *, admin_id: str | None = None) -> Announcement:
        announcement = await self.announcements.decline(announcement_id)
        await self._notify_announcer(announcement, "Your announcement was declined by the admin team.", admin_id)
        return announcement

    async def remove_announcement(self, announcement_id: str, *, admin_id: str | None = None) -> Announcement:
        announcement = await self.announcements.remove(announcement_id)
        logger.info("announcement removed", extra={"announcement_id": announcement_id, "admin_id": admin_id})
        return announcement

    async def force_evaluate_announcements(self, *, now: datetime | None = None) -> EvaluationResult:
        return await self.announcements.evaluate_now(now=now)

    async def sweep_announcement_activation(self, *, now: datetime | None = None) -> List[str]:
        return await self.announcements.sweep_activation(now=now)

    async def sweep_announcement_expiry(self, *, now: datetime | None = None) -> List[str]:
        return await self.announcements.sweep_expiry(now=now)

    async def redeliver_notifications(self, *, now: datetime | None = None) -> List[str]:
        return await self.dispatcher.redeliver_failed(now=now)

    async def _notify_announcer(self, announcement: Announcement, message: str, admin_id: str | None) -> None:
        if not announcement.created_by:
            return
        try:
            await self.dispatcher.send_announcement(
                announcement.created_by,
                announcement,
                message=message,
                admin_id=admin_id,
            )
        except Exception:  # noqa: BLE001
            logger.exception("announcer notice failed", extra={"announcement_id": announcement.id})

    # configuration

    async def get_configuration(self) -> Configuration:
        return await self.cache.refresh()

    async def update_configuration(self, changes: Mapping[str, Any], actor: ConfigurationActor) -> Configuration:
        config = await self.cache.store.update(changes, actor)
        self.cache.replace(config)
        logger.info("configuration updated", extra={"admin_id": actor.admin_id, "fields": sorted(changes)})
        return config

    async def list_configuration_logs(self, *, limit: int = 50) -> Sequence[ConfigurationChangeLog]:
        return await self.cache.store.list_logs(limit=limit)

    # dashboards

    async def list_urgent_items(self, *, now: datetime | None = None) -> UrgentItems:
        now = now or datetime.now(timezone.utc)
        config = self.cache.current()
        posts = await self.store.list_posts_with_min_reports(
            config.report_thresholds.urgent,
            exclude=(PostStatus.REMOVED, PostStatus.EXPIRED),
        )
        cutoff = now + timedelta(hours=config.urgent_announcement_threshold_hours)
        announcements = await self.store.list_pending_announcements_starting_before(cutoff)
        return UrgentItems(posts=posts, announcements=announcements)

    async def report_statistics(self) -> ReportStatistics:
        return await self.reports.statistics()


__all__ = [
    "ModerationOrchestrator",
    "SanctionOutcome",
    "StaffDirectory",
    "StaticStaffDirectory",
    "UrgentItems",
    "urgent_review_dedupe_key",
]
