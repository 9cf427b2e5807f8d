"""Domain models shared across the moderation lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from modconsole.moderation.domain.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SeverityTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    OTHER = "other"


class AggregateSeverity(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    URGENT = "urgent"


class ReportCategory(str, Enum):
    THREATS_VIOLENCE = "threats_violence"
    NUDITY = "nudity"
    INAPPROPRIATE = "inappropriate"
    HATE_SPEECH = "hate_speech"
    SCAM = "scam"
    HARASSMENT = "harassment"
    IMPERSONATION = "impersonation"
    MISINFORMATION = "misinformation"
    SPAM = "spam"
    OTHER = "other"


class ReportStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class PostStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"
    EXPIRED = "expired"


class AnnouncementStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    EXPIRED = "expired"
    DECLINED = "declined"
    REMOVED = "removed"

    @classmethod
    def coerce(cls, value: "str | AnnouncementStatus") -> "AnnouncementStatus":
        """Parse a stored status, reading the legacy ``rejected`` as ``declined``."""
        if isinstance(value, AnnouncementStatus):
            return value
        text = str(value).strip().lower()
        if text == "rejected":
            return cls.DECLINED
        return cls(text)

    @property
    def is_terminal(self) -> bool:
        return self in (AnnouncementStatus.DECLINED, AnnouncementStatus.REMOVED)


class UserStatus(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    SUSPENDED = "suspended"
    BANNED = "banned"


class NotificationType(str, Enum):
    WARNING = "warning"
    BAN = "ban"
    INFO = "info"
    ANNOUNCEMENT = "announcement"
    POST_REMOVED = "post_removed"
    URGENT_REVIEW = "urgent_review"


@dataclass(slots=True)
class ReportThresholds:
    normal: int = 2
    warning: int = 5
    urgent: int = 10

    def as_dict(self) -> Dict[str, int]:
        return {"normal": self.normal, "warning": self.warning, "urgent": self.urgent}


@dataclass(slots=True)
class Configuration:
    post_visibility_duration_hours: int = 24
    daily_free_post_limit: int = 3
    report_thresholds: ReportThresholds = field(default_factory=ReportThresholds)
    ban_threshold: int = 5
    ban_duration_days: int = 30
    emoji_pin_price: float = 10.0
    daily_free_coin: int = 10
    max_active_announcements: int = 10
    urgent_announcement_threshold_hours: int = 48
    last_updated: Optional[datetime] = None
    updated_by: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "post_visibility_duration_hours": self.post_visibility_duration_hours,
            "daily_free_post_limit": self.daily_free_post_limit,
            "report_thresholds": self.report_thresholds.as_dict(),
            "ban_threshold": self.ban_threshold,
            "ban_duration_days": self.ban_duration_days,
            "emoji_pin_price": self.emoji_pin_price,
            "daily_free_coin": self.daily_free_coin,
            "max_active_announcements": self.max_active_announcements,
            "urgent_announcement_threshold_hours": self.urgent_announcement_threshold_hours,
            "last_updated": self.last_updated,
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Configuration":
        thresholds = data.get("report_thresholds") or {}
        defaults = cls()
        return cls(
            post_visibility_duration_hours=int(data.get("post_visibility_duration_hours", defaults.post_visibility_duration_hours)),
            daily_free_post_limit=int(data.get("daily_free_post_limit", defaults.daily_free_post_limit)),
            report_thresholds=ReportThresholds(
                normal=int(thresholds.get("normal", defaults.report_thresholds.normal)),
                warning=int(thresholds.get("warning", defaults.report_thresholds.warning)),
                urgent=int(thresholds.get("urgent", defaults.report_thresholds.urgent)),
            ),
            ban_threshold=int(data.get("ban_threshold", defaults.ban_threshold)),
            ban_duration_days=int(data.get("ban_duration_days", defaults.ban_duration_days)),
            emoji_pin_price=float(data.get("emoji_pin_price", defaults.emoji_pin_price)),
            daily_free_coin=int(data.get("daily_free_coin", defaults.daily_free_coin)),
            max_active_announcements=int(data.get("max_active_announcements", defaults.max_active_announcements)),
            urgent_announcement_threshold_hours=int(
                data.get("urgent_announcement_threshold_hours", defaults.urgent_announcement_threshold_hours)
            ),
            last_updated=data.get("last_updated"),
            updated_by=data.get("updated_by"),
        )


@dataclass(slots=True)
class ConfigurationChangeLog:
    change_set_id: str
    field: str
    old_value: Any
    new_value: Any
    admin_id: str
    admin_email: Optional[str]
    timestamp: datetime


@dataclass(slots=True)
class Report:
    id: str
    reporter_id: str
    reported_user_id: str
    post_id: str
    category: str
    description: str = ""
    report_count: int = 0
    status: ReportStatus = ReportStatus.PENDING
    auto_removed: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class Post:
    id: str
    user_id: str
    content: str = ""
    status: PostStatus = PostStatus.ACTIVE
    report_count: int = 0
    is_warned: bool = False
    removed_at: Optional[datetime] = None
    removed_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class Announcement:
    id: str
    title: str
    start_date: datetime
    end_date: datetime
    department: str = ""
    body: str = ""
    status: AnnouncementStatus = AnnouncementStatus.PENDING
    is_urgent: bool = False
    created_by: Optional[str] = None
    submitted_at: datetime = field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.status = AnnouncementStatus.coerce(self.status)
        if self.start_date >= self.end_date:
            raise ValidationError("announcement_start_must_precede_end")


@dataclass(slots=True)
class User:
    id: str
    name: str = ""
    email: Optional[str] = None
    status: UserStatus = UserStatus.ACTIVE
    warning_count: int = 0
    last_warning_at: Optional[datetime] = None
    suspend_count: int = 0
    suspended_at: Optional[datetime] = None
    suspend_expires_at: Optional[datetime] = None
    banned_at: Optional[datetime] = None
    ban_expires_at: Optional[datetime] = None
    push_token: Optional[str] = None
    last_status_update: Optional[datetime] = None


@dataclass(slots=True, frozen=True)
class Notification:
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    related_post_id: Optional[str] = None
    admin_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    dedupe_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_read: bool = False


@dataclass(slots=True)
class NotificationLog:
    notification_id: str
    user_id: str
    type: NotificationType
    sent_at: datetime
    success: bool
    message_id: Optional[str] = None
    token_preview: Optional[str] = None
    error: Optional[str] = None
    permanent: bool = False


@dataclass(slots=True)
class PushMessage:
    """Platform-neutral push payload handed to the push sender."""

    token: str
    title: str
    body: str
    data: Dict[str, str]
    android_channel: str
    sound: str
    category: str
    badge: int


@dataclass(slots=True)
class PostModerationInfo:
    severity_level: AggregateSeverity
    requires_urgent_review: bool
    should_notify_admin: bool


__all__ = [
    "AggregateSeverity",
    "Announcement",
    "AnnouncementStatus",
    "Configuration",
    "ConfigurationChangeLog",
    "Notification",
    "NotificationLog",
    "NotificationType",
    "Post",
    "PostModerationInfo",
    "PostStatus",
    "PushMessage",
    "Report",
    "ReportCategory",
    "ReportStatus",
    "ReportThresholds",
    "SeverityTier",
    "User",
    "UserStatus",
    "utcnow",
]
