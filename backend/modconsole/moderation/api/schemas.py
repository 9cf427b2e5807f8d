"""Request and response models for the moderation admin API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from modconsole.moderation.domain.announcements import EvaluationResult
from modconsole.moderation.domain.errors import ChunkFailure
from modconsole.moderation.domain.models import (
    Announcement,
    Configuration,
    ConfigurationChangeLog,
    Post,
    PostModerationInfo,
    Report,
    ReportStatus,
    User,
)
from modconsole.moderation.domain.orchestrator import SanctionOutcome, UrgentItems
from modconsole.moderation.domain.reports import ReportStatistics


class ThresholdsModel(BaseModel):
    normal: int
    warning: int
    urgent: int


class ThresholdsPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    normal: Optional[int] = None
    warning: Optional[int] = None
    urgent: Optional[int] = None


class ConfigurationOut(BaseModel):
    post_visibility_duration_hours: int
    daily_free_post_limit: int
    report_thresholds: ThresholdsModel
    ban_threshold: int
    ban_duration_days: int
    emoji_pin_price: float
    daily_free_coin: int
    max_active_announcements: int
    urgent_announcement_threshold_hours: int
    last_updated: Optional[datetime] = None
    updated_by: Optional[str] = None

    @classmethod
    def from_domain(cls, config: Configuration) -> "ConfigurationOut":
        return cls.model_validate(config.as_dict())


class ConfigurationPatch(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)

    post_visibility_duration_hours: Optional[int] = None
    daily_free_post_limit: Optional[int] = None
    report_thresholds: Optional[ThresholdsPatch] = None
    ban_threshold: Optional[int] = None
    ban_duration_days: Optional[int] = None
    emoji_pin_price: Optional[float] = None
    daily_free_coin: Optional[int] = None
    max_active_announcements: Optional[int] = None
    urgent_announcement_threshold_hours: Optional[int] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ConfigurationLogOut(BaseModel):
    change_set_id: str
    field: str
    old_value: Any = None
    new_value: Any = None
    admin_id: str
    admin_email: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_domain(cls, entry: ConfigurationChangeLog) -> "ConfigurationLogOut":
        return cls(
            change_set_id=entry.change_set_id,
            field=entry.field,
            old_value=entry.old_value,
            new_value=entry.new_value,
            admin_id=entry.admin_id,
            admin_email=entry.admin_email,
            timestamp=entry.timestamp,
        )


class AnnouncementOut(BaseModel):
    id: str
    title: str
    department: str
    body: str
    status: str
    is_urgent: bool
    start_date: datetime
    end_date: datetime
    created_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, announcement: Announcement) -> "AnnouncementOut":
        return cls(
            id=announcement.id,
            title=announcement.title,
            department=announcement.department,
            body=announcement.body,
            status=announcement.status.value,
            is_urgent=announcement.is_urgent,
            start_date=announcement.start_date,
            end_date=announcement.end_date,
            created_by=announcement.created_by,
            approved_at=announcement.approved_at,
            rejected_at=announcement.rejected_at,
            removed_at=announcement.removed_at,
        )


class EvaluationOut(BaseModel):
    expired: List[str]
    activated: List[str]

    @classmethod
    def from_domain(cls, result: EvaluationResult) -> "EvaluationOut":
        return cls(expired=list(result.expired), activated=list(result.activated))


class ReportStatusIn(BaseModel):
    status: ReportStatus


class ReportOut(BaseModel):
    id: str
    post_id: str
    reported_user_id: str
    category: str
    status: str
    auto_removed: bool
    report_count: int
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, report: Report) -> "ReportOut":
        return cls(
            id=report.id,
            post_id=report.post_id,
            reported_user_id=report.reported_user_id,
            category=report.category,
            status=report.status.value,
            auto_removed=report.auto_removed,
            report_count=report.report_count,
            updated_at=report.updated_at,
        )


class ReportStatisticsOut(BaseModel):
    category_counts: Dict[str, int]
    severity_counts: Dict[str, int]
    status_counts: Dict[str, int]
    total: int

    @classmethod
    def from_domain(cls, stats: ReportStatistics) -> "ReportStatisticsOut":
        return cls(
            category_counts=dict(stats.category_counts),
            severity_counts=dict(stats.severity_counts),
            status_counts=dict(stats.status_counts),
            total=stats.total,
        )


class PostOut(BaseModel):
    id: str
    user_id: str
    status: str
    report_count: int
    is_warned: bool
    removed_at: Optional[datetime] = None
    removed_reason: Optional[str] = None

    @classmethod
    def from_domain(cls, post: Post) -> "PostOut":
        return cls(
            id=post.id,
            user_id=post.user_id,
            status=post.status.value,
            report_count=post.report_count,
            is_warned=post.is_warned,
            removed_at=post.removed_at,
            removed_reason=post.removed_reason,
        )


class PostModerationOut(BaseModel):
    severity_level: str
    requires_urgent_review: bool
    should_notify_admin: bool

    @classmethod
    def from_domain(cls, info: PostModerationInfo) -> "PostModerationOut":
        return cls(
            severity_level=info.severity_level.value,
            requires_urgent_review=info.requires_urgent_review,
            should_notify_admin=info.should_notify_admin,
        )


class RemovePostIn(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class WarnUserIn(BaseModel):
    post_id: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=1000)


class SuspendUserIn(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    duration_days: Optional[int] = Field(default=None, ge=1, le=365)


class BanUserIn(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    duration_days: Optional[int] = Field(default=None, ge=1, le=365)


class UserOut(BaseModel):
    id: str
    status: str
    warning_count: int
    suspend_count: int
    last_warning_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    suspend_expires_at: Optional[datetime] = None
    banned_at: Optional[datetime] = None
    ban_expires_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            status=user.status.value,
            warning_count=user.warning_count,
            suspend_count=user.suspend_count,
            last_warning_at=user.last_warning_at,
            suspended_at=user.suspended_at,
            suspend_expires_at=user.suspend_expires_at,
            banned_at=user.banned_at,
            ban_expires_at=user.ban_expires_at,
        )


class ChunkFailureOut(BaseModel):
    index: int
    post_ids: List[str]
    error: str

    @classmethod
    def from_domain(cls, failure: ChunkFailure) -> "ChunkFailureOut":
        return cls(index=failure.index, post_ids=list(failure.post_ids), error=failure.error)


class SanctionOut(BaseModel):
    action: str
    user: UserOut
    notification_id: Optional[str] = None
    resolved_report_ids: List[str] = Field(default_factory=list)
    failed_chunks: List[ChunkFailureOut] = Field(default_factory=list)
    ban_recommended: bool = False
    failed_step: Optional[str] = None

    @classmethod
    def from_domain(cls, outcome: SanctionOutcome) -> "SanctionOut":
        resolution = outcome.resolution
        return cls(
            action=outcome.action,
            user=UserOut.from_domain(outcome.user),
            notification_id=outcome.notification_id,
            resolved_report_ids=list(resolution.resolved_report_ids) if resolution else [],
            failed_chunks=[ChunkFailureOut.from_domain(item) for item in resolution.failures] if resolution else [],
            ban_recommended=outcome.ban_recommended,
            failed_step=outcome.failed_step,
        )


class UrgentOut(BaseModel):
    posts: List[PostOut]
    announcements: List[AnnouncementOut]
    total: int

    @classmethod
    def from_domain(cls, items: UrgentItems) -> "UrgentOut":
        return cls(
            posts=[PostOut.from_domain(post) for post in items.posts],
            announcements=[AnnouncementOut.from_domain(item) for item in items.announcements],
            total=items.total,
        )
