"""Report ingestion, auto-removal and batched resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from modconsole.moderation.domain import severity
from modconsole.moderation.domain.errors import (
    ChunkFailure,
    InvalidTransitionError,
    ModerationError,
    NotFoundError,
    PartialBatchError,
    StepFailedError,
    ValidationError,
)
from modconsole.moderation.domain.models import (
    Post,
    PostModerationInfo,
    Report,
    ReportStatus,
    SeverityTier,
    User,
)
from modconsole.moderation.domain.notifications import NotificationDispatcher
from modconsole.moderation.domain.repository import IN_QUERY_LIMIT, ModerationStore, chunked, new_id
from modconsole.moderation.domain.rules import BusinessRules
from modconsole.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTO_REMOVAL_PREFIX = "Auto-removed due to high severity report"

_ADMIN_STATUSES = (ReportStatus.RESOLVED, ReportStatus.DISMISSED)


def auto_removal_reason(category: str) -> str:
    return f"{AUTO_REMOVAL_PREFIX}: {category}"


def post_removed_dedupe_key(post_id: str) -> str:
    return f"post_removed:{post_id}"


@dataclass(slots=True)
class ReportProcessingResult:
    report_id: str
    post_id: str
    severity: SeverityTier
    auto_removed: bool = False
    post_transitioned: bool = False
    notification_id: Optional[str] = None
    completed_steps: Tuple[str, ...] = ()


@dataclass(slots=True)
class ResolutionOutcome:
    user_id: str
    post_ids: List[str] = field(default_factory=list)
    resolved_report_ids: List[str] = field(default_factory=list)
    chunks: int = 0
    failures: List[ChunkFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(slots=True)
class ReportStatistics:
    """Report totals broken down by category, severity tier and status."""

    category_counts: Dict[str, int] = field(default_factory=dict)
    severity_counts: Dict[str, int] = field(default_factory=lambda: {tier.value: 0 for tier in SeverityTier})
    status_counts: Dict[str, int] = field(default_factory=lambda: {status.value: 0 for status in ReportStatus})
    total: int = 0

    def add(self, category: str, status: ReportStatus, count: int) -> None:
        tier = severity.classify(category)
        self.category_counts[category] = self.category_counts.get(category, 0) + count
        self.severity_counts[tier.value] += count
        self.status_counts[status.value] += count
        self.total += count


@dataclass
class ReportLifecycleManager:
    store: ModerationStore
    rules: BusinessRules
    dispatcher: NotificationDispatcher
    chunk_size: int = IN_QUERY_LIMIT

    async def submit_report(
        self,
        *,
        reporter_id: str,
        reported_user_id: str,
        post_id: str,
        category: str,
        description: str = "",
        now: datetime | None = None,
    ) -> Report:
        """Count the report against the post atomically, then persist it as pending."""
        missing = [
            name
            for name, value in (
                ("reporter_id", reporter_id),
                ("reported_user_id", reported_user_id),
                ("post_id", post_id),
                ("category", category),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError("missing_report_fields", errors=[f"{name} is required" for name in missing])
        now = now or datetime.now(timezone.utc)
        count = await self.store.increment_post_report_count(post_id, now=now)
        report = Report(
            id=new_id(),
            reporter_id=reporter_id,
            reported_user_id=reported_user_id,
            post_id=post_id,
            category=severity.normalize_category(category),
            description=description or "",
            report_count=count,
            created_at=now,
        )
        return await self.store.create_report(report)

    async def process_new_report(self, report_id: str, *, now: datetime | None = None) -> ReportProcessingResult:
        """Run classify, post mutation, report mutation and notification in order.

        Halts on the first failing step with ``StepFailedError``. Re-processing a report is a no-op.
        """
        now = now or datetime.now(timezone.utc)
        completed: List[str] = []
        report = await self._step("load_report", completed, lambda: self.store.get_report(report_id))
        if report is None:
            raise NotFoundError(f"report_not_found:{report_id}")
        tier = severity.classify(report.category)
        completed.append("classify")
        obs_metrics.MOD_REPORTS_TOTAL.labels(severity=tier.value).inc()
        result = ReportProcessingResult(report_id=report.id, post_id=report.post_id, severity=tier)
        if tier is not SeverityTier.HIGH:
            result.completed_steps = tuple(completed)
            return result

        category = severity.normalize_category(report.category)
        reason = auto_removal_reason(category)
        post, transitioned = await self._step(
            "post",
            completed,
            lambda: self.store.remove_post_if_not_removed(report.post_id, reason=reason, now=now),
        )
        # an already removed post keeps its first reason; the report still counts as auto-resolved
        result.post_transitioned = transitioned
        result.auto_removed = True
        if transitioned:
            obs_metrics.MOD_AUTO_REMOVALS_TOTAL.labels(category=category).inc()
            logger.info(
                "post auto-removed",
                extra={"post_id": post.id, "report_id": report.id, "category": category},
            )

        updated = await self._step(
            "report",
            completed,
            lambda: self.store.update_report_if(
                report.id,
                expected=ReportStatus.PENDING,
                status=ReportStatus.RESOLVED,
                now=now,
                auto_removed=True,
            ),
        )
        if updated is None:
            logger.debug("report already resolved", extra={"report_id": report.id})

        result.notification_id = await self._step(
            "notify",
            completed,
            lambda: self.dispatcher.send_post_removed(
                user_id=report.reported_user_id,
                post_id=post.id,
                report_id=report.id,
                category=category,
                dedupe_key=post_removed_dedupe_key(post.id),
            ),
        )
        result.completed_steps = tuple(completed)
        return result

    async def post_moderation(self, post_id: str) -> PostModerationInfo:
        post = await self.store.get_post(post_id)
        if post is None:
            raise NotFoundError(f"post_not_found:{post_id}")
        return self.rules.post_moderation_for(post)

    async def update_status(self, report_id: str, status: ReportStatus | str, *, now: datetime | None = None) -> Report:
        try:
            target = ReportStatus(status)
        except ValueError as exc:
            raise ValidationError(f"unknown_report_status:{status}") from exc
        if target not in _ADMIN_STATUSES:
            raise ValidationError(f"report_status_not_settable:{target.value}")
        current = await self.store.get_report(report_id)
        if current is None:
            raise NotFoundError(f"report_not_found:{report_id}")
        now = now or datetime.now(timezone.utc)
        updated = await self.store.update_report_if(
            report_id,
            expected=ReportStatus.PENDING,
            status=target,
            now=now,
        )
        if updated is None:
            latest = await self.store.get_report(report_id)
            current_status = latest.status.value if latest else current.status.value
            raise InvalidTransitionError("report", report_id, current_status, target.value)
        obs_metrics.MOD_REPORT_STATUS_UPDATES_TOTAL.labels(status=target.value).inc()
        return updated

    async def resolve_for_user(self, user_id: str, *, now: datetime | None = None) -> ResolutionOutcome:
        """Resolve pending reports on every post of ``user_id`` in fixed-size chunks.

        Every chunk is attempted; failed chunks are raised together as ``PartialBatchError``.
        """
        now = now or datetime.now(timezone.utc)
        post_ids = await self.store.list_post_ids_for_user(user_id)
        outcome = ResolutionOutcome(user_id=user_id, post_ids=list(post_ids))
        for index, chunk in enumerate(chunked(post_ids, min(self.chunk_size, IN_QUERY_LIMIT))):
            outcome.chunks += 1
            try:
                resolved = await self.store.resolve_pending_reports_for_posts(chunk, updated_at=now)
            except Exception as exc:  # noqa: BLE001
                obs_metrics.MOD_RESOLUTION_CHUNKS_TOTAL.labels(result="failed").inc()
                logger.warning(
                    "report resolution chunk failed",
                    extra={"user_id": user_id, "chunk": index, "post_ids": chunk, "error": str(exc)},
                )
                outcome.failures.append(ChunkFailure(index=index, post_ids=tuple(chunk), error=str(exc)))
                continue
            obs_metrics.MOD_RESOLUTION_CHUNKS_TOTAL.labels(result="ok").inc()
            outcome.resolved_report_ids.extend(resolved)
        if outcome.failures:
            raise PartialBatchError(
                outcome.failures,
                resolved_report_ids=outcome.resolved_report_ids,
                outcome=outcome,
            )
        return outcome

    async def record_warning(self, user_id: str, *, post_id: str | None = None, now: datetime | None = None) -> User:
        """Increment the warning counter and flag the related post, if any."""
        if await self.store.get_user(user_id) is None:
            raise NotFoundError(f"user_not_found:{user_id}")
        if post_id and await self.store.get_post(post_id) is None:
            raise NotFoundError(f"post_not_found:{post_id}")
        now = now or datetime.now(timezone.utc)
        user = await self.store.record_user_warning(user_id, now=now)
        if post_id:
            await self.store.mark_post_warned(post_id, now=now)
        return user

    async def suspend_user(self, user_id: str, *, duration_days: int, now: datetime | None = None) -> User:
        if duration_days < 1:
            raise ValidationError("suspension_duration_must_be_positive")
        if await self.store.get_user(user_id) is None:
            raise NotFoundError(f"user_not_found:{user_id}")
        now = now or datetime.now(timezone.utc)
        return await self.store.apply_user_suspension(user_id, now=now, expires_at=now + timedelta(days=duration_days))

    async def ban_user(self, user_id: str, *, duration_days: int | None = None, now: datetime | None = None) -> User:
        if duration_days is not None and duration_days < 1:
            raise ValidationError("ban_duration_must_be_positive")
        if await self.store.get_user(user_id) is None:
            raise NotFoundError(f"user_not_found:{user_id}")
        now = now or datetime.now(timezone.utc)
        expires_at = now + timedelta(days=duration_days) if duration_days else None
        return await self.store.apply_user_ban(user_id, now=now, expires_at=expires_at)

    async def list_stalled_high_severity(self, *, created_before: datetime, limit: int = 100) -> List[Report]:
        """Pending reports whose category should already have triggered auto-removal."""
        return await self.store.list_pending_reports(
            severity.categories_for(SeverityTier.HIGH),
            created_before=created_before,
            limit=limit,
        )

    async def statistics(self) -> ReportStatistics:
        stats = ReportStatistics()
        for category, status, count in await self.store.count_reports_by_category_and_status():
            stats.add(severity.normalize_category(category), status, count)
        return stats

    async def reinstate_user(self, user_id: str, *, now: datetime | None = None) -> User:
        if await self.store.get_user(user_id) is None:
            raise NotFoundError(f"user_not_found:{user_id}")
        return await self.store.reinstate_user(user_id, now=now or datetime.now(timezone.utc))

    async def reset_warnings(self, user_id: str, *, now: datetime | None = None) -> User:
        if await self.store.get_user(user_id) is None:
            raise NotFoundError(f"user_not_found:{user_id}")
        return await self.store.reset_user_warnings(user_id, now=now or datetime.now(timezone.utc))

    async def remove_post(self, post_id: str, *, reason: str, now: datetime | None = None) -> Tuple[Post, bool]:
        if not reason or not reason.strip():
            raise ValidationError("removal_reason_required")
        now = now or datetime.now(timezone.utc)
        post, transitioned = await self.store.remove_post_if_not_removed(post_id, reason=reason.strip(), now=now)
        if transitioned:
            logger.info("post removed by admin", extra={"post_id": post_id})
        return post, transitioned

    async def _step(self, name: str, completed: List[str], action: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await action()
        except (NotFoundError, ValidationError):
            raise
        except ModerationError as exc:
            logger.error("report step failed", extra={"step": name, "completed_steps": list(completed), "error": str(exc)})
            raise StepFailedError(name, completed_steps=completed) from exc
        except Exception as exc:
            logger.exception("report step failed", extra={"step": name, "completed_steps": list(completed)})
            raise StepFailedError(name, completed_steps=completed) from exc
        completed.append(name)
        return value


__all__ = [
    "AUTO_REMOVAL_PREFIX",
    "ReportLifecycleManager",
    "ReportProcessingResult",
    "ReportStatistics",
    "ResolutionOutcome",
    "auto_removal_reason",
    "post_removed_dedupe_key",
]
