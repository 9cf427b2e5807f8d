"""Persistence port for moderation entities and the in-memory implementation."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import (
    Awaitable,
    Callable,
    Collection,
    Dict,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from modconsole.moderation.domain.errors import NotFoundError, ValidationError
from modconsole.moderation.domain.models import (
    Announcement,
    AnnouncementStatus,
    Notification,
    NotificationLog,
    Post,
    PostStatus,
    Report,
    ReportStatus,
    User,
    UserStatus,
)

logger = logging.getLogger(__name__)

# Upper bound on ids accepted by a single "in" filter.
IN_QUERY_LIMIT = 10

ReportCreatedHandler = Callable[[Report], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]

_ANNOUNCEMENT_DUE_FIELDS = ("start_date", "end_date")


class ReportEventSource(Protocol):
    async def subscribe_report_created(self, handler: ReportCreatedHandler) -> Unsubscribe:
        ...


class ModerationStore(ReportEventSource, Protocol):
    """Storage contract for posts, reports, announcements, users and notifications."""

    # posts
    async def create_post(self, post: Post) -> Post:
        ...

    async def get_post(self, post_id: str) -> Post | None:
        ...

    async def increment_post_report_count(self, post_id: str, *, now: datetime) -> int:
        """Atomically bump the post report counter and return the new value."""

    async def remove_post_if_not_removed(self, post_id: str, *, reason: str, now: datetime) -> Tuple[Post, bool]:
        """Move a post into ``removed`` unless it already is; returns (post, transitioned)."""

    async def mark_post_warned(self, post_id: str, *, now: datetime) -> Post:
        ...

    async def list_post_ids_for_user(self, user_id: str) -> List[str]:
        ...

    async def list_posts_with_min_reports(self, min_count: int, *, exclude: Collection[PostStatus]) -> List[Post]:
        ...

    # reports
    async def create_report(self, report: Report) -> Report:
        ...

    async def get_report(self, report_id: str) -> Report | None:
        ...

    async def update_report_if(
        self,
        report_id: str,
        *,
        expected: ReportStatus,
        status: ReportStatus,
        now: datetime,
        auto_removed: Optional[bool] = None,
    ) -> Report | None:
        """Compare-and-set on report status. Returns None when the current status differs."""

    async def resolve_pending_reports_for_posts(self, post_ids: Sequence[str], *, updated_at: datetime) -> List[str]:
        """Resolve every pending report on the given posts; rejects more than ``IN_QUERY_LIMIT`` ids."""

    async def list_pending_reports(
        self,
        categories: Collection[str],
        *,
        created_before: datetime,
        limit: int,
    ) -> List[Report]:
        """Oldest first pending reports in ``categories`` created at or before ``created_before``."""

    async def count_reports_by_category_and_status(self) -> List[Tuple[str, ReportStatus, int]]:
        ...

    # announcements
    async def create_announcement(self, announcement: Announcement) -> Announcement:
        ...

    async def get_announcement(self, announcement_id: str) -> Announcement | None:
        ...

    async def update_announcement_if(
        self,
        announcement_id: str,
        *,
        expected: Collection[AnnouncementStatus],
        status: AnnouncementStatus,
        stamps: Mapping[str, datetime],
    ) -> Announcement | None:
        ...

    async def list_announcements_due(
        self,
        status: AnnouncementStatus,
        *,
        due_field: str,
        now: datetime,
    ) -> List[Announcement]:
        ...

    async def transition_announcements(
        self,
        announcement_ids: Sequence[str],
        *,
        from_status: AnnouncementStatus,
        to_status: AnnouncementStatus,
        due_field: str,
        now: datetime,
    ) -> List[str]:
        """Apply one atomic batch; each row re-checks status and due date. Returns ids moved."""

    async def list_pending_announcements_starting_before(self, cutoff: datetime) -> List[Announcement]:
        ...

    # users
    async def create_user(self, user: User) -> User:
        ...

    async def get_user(self, user_id: str) -> User | None:
        ...

    async def record_user_warning(self, user_id: str, *, now: datetime) -> User:
        ...

    async def apply_user_suspension(self, user_id: str, *, now: datetime, expires_at: datetime) -> User:
        ...

    async def apply_user_ban(self, user_id: str, *, now: datetime, expires_at: datetime | None) -> User:
        ...

    async def reinstate_user(self, user_id: str, *, now: datetime) -> User:
        """Return a user to ``active`` and clear the ban and suspension expiries."""

    async def reset_user_warnings(self, user_id: str, *, now: datetime) -> User:
        ...

    async def clear_push_token(self, user_id: str, token: str) -> bool:
        ...

    # notifications
    async def create_notification(self, notification: Notification) -> Tuple[Notification, bool]:
        """Insert unless ``dedupe_key`` already exists; returns (stored, created)."""

    async def get_notification(self, notification_id: str) -> Notification | None:
        ...

    async def count_unread_notifications(self, user_id: str) -> int:
        ...

    async def append_notification_log(self, entry: NotificationLog) -> None:
        ...

    async def list_notification_logs(self, notification_id: str) -> List[NotificationLog]:
        ...

    async def list_redeliverable_notifications(self, *, max_attempts: int, created_after: datetime) -> List[Notification]:
        """Notifications whose delivery attempts all failed transiently and number fewer than ``max_attempts``."""


def new_id() -> str:
    return uuid.uuid4().hex


def chunked(values: Sequence[str], size: int = IN_QUERY_LIMIT) -> List[List[str]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [list(values[index : index + size]) for index in range(0, len(values), size)]


def _require(entity: object | None, kind: str, entity_id: str) -> None:
    if entity is None:
        raise NotFoundError(f"{kind}_not_found:{entity_id}")


@dataclass
class InMemoryModerationStore:
    """Dictionary backed store for local development and tests.

    Mutations complete without awaiting, so each call is atomic on the event loop.
    Reads return copies so callers never hold live references.
    """

    posts: MutableMapping[str, Post] = field(default_factory=dict)
    reports: MutableMapping[str, Report] = field(default_factory=dict)
    announcements: MutableMapping[str, Announcement] = field(default_factory=dict)
    users: MutableMapping[str, User] = field(default_factory=dict)
    notifications: MutableMapping[str, Notification] = field(default_factory=dict)
    notification_logs: List[NotificationLog] = field(default_factory=list)
    _report_handlers: Dict[int, ReportCreatedHandler] = field(default_factory=dict)
    _next_handler: int = 0

    # posts
    async def create_post(self, post: Post) -> Post:
        self.posts[post.id] = replace(post)
        return replace(post)

    async def get_post(self, post_id: str) -> Post | None:
        post = self.posts.get(post_id)
        return replace(post) if post else None

    async def increment_post_report_count(self, post_id: str, *, now: datetime) -> int:
        post = self.posts.get(post_id)
        _require(post, "post", post_id)
        post.report_count += 1
        post.updated_at = now
        return post.report_count

    async def remove_post_if_not_removed(self, post_id: str, *, reason: str, now: datetime) -> Tuple[Post, bool]:
        post = self.posts.get(post_id)
        _require(post, "post", post_id)
        if post.status is PostStatus.REMOVED:
            return replace(post), False
        post.status = PostStatus.REMOVED
        post.removed_at = now
        post.removed_reason = reason
        post.updated_at = now
        return replace(post), True

    async def mark_post_warned(self, post_id: str, *, now: datetime) -> Post:
        post = self.posts.get(post_id)
        _require(post, "post", post_id)
        post.is_warned = True
        post.updated_at = now
        return replace(post)

    async def list_post_ids_for_user(self, user_id: str) -> List[str]:
        return sorted(post.id for post in self.posts.values() if post.user_id == user_id)

    async def list_posts_with_min_reports(self, min_count: int, *, exclude: Collection[PostStatus]) -> List[Post]:
        matches = [
            replace(post)
            for post in self.posts.values()
            if post.report_count >= min_count and post.status not in exclude
        ]
        return sorted(matches, key=lambda post: post.report_count, reverse=True)

    # reports
    async def create_report(self, report: Report) -> Report:
        self.reports[report.id] = replace(report)
        stored = replace(report)
        for handler in list(self._report_handlers.values()):
            try:
                await handler(replace(report))
            except Exception:  # noqa: BLE001
                logger.exception("report created handler failed", extra={"report_id": report.id})
        return stored

    async def get_report(self, report_id: str) -> Report | None:
        report = self.reports.get(report_id)
        return replace(report) if report else None

    async def update_report_if(
        self,
        report_id: str,
        *,
        expected: ReportStatus,
        status: ReportStatus,
        now: datetime,
        auto_removed: Optional[bool] = None,
    ) -> Report | None:
        report = self.reports.get(report_id)
        _require(report, "report", report_id)
        if report.status is not expected:
            return None
        report.status = status
        report.updated_at = now
        if auto_removed is not None:
            report.auto_removed = auto_removed
        return replace(report)

    async def resolve_pending_reports_for_posts(self, post_ids: Sequence[str], *, updated_at: datetime) -> List[str]:
        if len(post_ids) > IN_QUERY_LIMIT:
            raise ValidationError(f"in_query_limit_exceeded:{len(post_ids)}")
        wanted = set(post_ids)
        resolved: List[str] = []
        for report in self.reports.values():
            if report.post_id in wanted and report.status is ReportStatus.PENDING:
                report.status = ReportStatus.RESOLVED
                report.updated_at = updated_at
                resolved.append(report.id)
        return resolved

    async def list_pending_reports(
        self,
        categories: Collection[str],
        *,
        created_before: datetime,
        limit: int,
    ) -> List[Report]:
        wanted = set(categories)
        matches = [
            replace(report)
            for report in self.reports.values()
            if report.status is ReportStatus.PENDING
            and report.category in wanted
            and report.created_at <= created_before
        ]
        return sorted(matches, key=lambda report: report.created_at)[:limit]

    async def count_reports_by_category_and_status(self) -> List[Tuple[str, ReportStatus, int]]:
        counts: Dict[Tuple[str, ReportStatus], int] = {}
        for report in self.reports.values():
            key = (report.category, report.status)
            counts[key] = counts.get(key, 0) + 1
        return [(category, status, count) for (category, status), count in sorted(counts.items())]

    async def subscribe_report_created(self, handler: ReportCreatedHandler) -> Unsubscribe:
        handler_id = self._next_handler
        self._next_handler += 1
        self._report_handlers[handler_id] = handler

        async def _unsubscribe() -> None:
            self._report_handlers.pop(handler_id, None)

        return _unsubscribe

    # announcements
    async def create_announcement(self, announcement: Announcement) -> Announcement:
        self.announcements[announcement.id] = replace(announcement)
        return replace(announcement)

    async def get_announcement(self, announcement_id: str) -> Announcement | None:
        announcement = self.announcements.get(announcement_id)
        return replace(announcement) if announcement else None

    async def update_announcement_if(
        self,
        announcement_id: str,
        *,
        expected: Collection[AnnouncementStatus],
        status: AnnouncementStatus,
        stamps: Mapping[str, datetime],
    ) -> Announcement | None:
        announcement = self.announcements.get(announcement_id)
        _require(announcement, "announcement", announcement_id)
        if announcement.status not in expected:
            return None
        announcement.status = status
        for name, value in stamps.items():
            setattr(announcement, name, value)
        return replace(announcement)

    async def list_announcements_due(
        self,
        status: AnnouncementStatus,
        *,
        due_field: str,
        now: datetime,
    ) -> List[Announcement]:
        if due_field not in _ANNOUNCEMENT_DUE_FIELDS:
            raise ValueError(f"unsupported due field {due_field}")
        return [
            replace(item)
            for item in self.announcements.values()
            if item.status is status and getattr(item, due_field) <= now
        ]

    async def transition_announcements(
        self,
        announcement_ids: Sequence[str],
        *,
        from_status: AnnouncementStatus,
        to_status: AnnouncementStatus,
        due_field: str,
        now: datetime,
    ) -> List[str]:
        if due_field not in _ANNOUNCEMENT_DUE_FIELDS:
            raise ValueError(f"unsupported due field {due_field}")
        eligible = [
            self.announcements[item_id]
            for item_id in dict.fromkeys(announcement_ids)
            if item_id in self.announcements
            and self.announcements[item_id].status is from_status
            and getattr(self.announcements[item_id], due_field) <= now
        ]
        for item in eligible:
            item.status = to_status
            item.updated_at = now
        return [item.id for item in eligible]

    async def list_pending_announcements_starting_before(self, cutoff: datetime) -> List[Announcement]:
        matches = [
            replace(item)
            for item in self.announcements.values()
            if item.status is AnnouncementStatus.PENDING and item.start_date <= cutoff
        ]
        return sorted(matches, key=lambda item: item.start_date)

    # users
    async def create_user(self, user: User) -> User:
        self.users[user.id] = replace(user)
        return replace(user)

    async def get_user(self, user_id: str) -> User | None:
        user = self.users.get(user_id)
        return replace(user) if user else None

    async def record_user_warning(self, user_id: str, *, now: datetime) -> User:
        user = self.users.get(user_id)
        _require(user, "user", user_id)
        user.warning_count += 1
        user.last_warning_at = now
        if user.status not in (UserStatus.SUSPENDED, UserStatus.BANNED):
            user.status = UserStatus.WARNING
        user.last_status_update = now
        return replace(user)

    async def apply_user_suspension(self, user_id: str, *, now: datetime, expires_at: datetime) -> User:
        user = self.users.get(user_id)
        _require(user, "user", user_id)
        user.status = UserStatus.SUSPENDED
        user.suspended_at = now
        user.suspend_expires_at = expires_at
        user.suspend_count += 1
        user.last_status_update = now
        return replace(user)

    async def apply_user_ban(self, user_id: str, *, now: datetime, expires_at: datetime | None) -> User:
        user = self.users.get(user_id)
        _require(user, "user", user_id)
        user.status = UserStatus.BANNED
        user.banned_at = now
        user.ban_expires_at = expires_at
        user.last_status_update = now
        return replace(user)

    async def reinstate_user(self, user_id: str, *, now: datetime) -> User:
        user = self.users.get(user_id)
        _require(user, "user", user_id)
        user.status = UserStatus.ACTIVE
        user.banned_at = None
        user.ban_expires_at = None
        user.suspend_expires_at = None
        user.last_status_update = now
        return replace(user)

    async def reset_user_warnings(self, user_id: str, *, now: datetime) -> User:
        user = self.users.get(user_id)
        _require(user, "user", user_id)
        user.warning_count = 0
        if user.status is UserStatus.WARNING:
            user.status = UserStatus.ACTIVE
        user.last_status_update = now
        return replace(user)

    async def clear_push_token(self, user_id: str, token: str) -> bool:
        user = self.users.get(user_id)
        if user is None or user.push_token != token:
            return False
        user.push_token = None
        return True

    # notifications
    async def create_notification(self, notification: Notification) -> Tuple[Notification, bool]:
        if notification.dedupe_key:
            for existing in self.notifications.values():
                if existing.dedupe_key == notification.dedupe_key:
                    return existing, False
        self.notifications[notification.id] = notification
        return notification, True

    async def get_notification(self, notification_id: str) -> Notification | None:
        return self.notifications.get(notification_id)

    async def count_unread_notifications(self, user_id: str) -> int:
        return sum(1 for item in self.notifications.values() if item.user_id == user_id and not item.is_read)

    async def append_notification_log(self, entry: NotificationLog) -> None:
        self.notification_logs.append(replace(entry))

    async def list_notification_logs(self, notification_id: str) -> List[NotificationLog]:
        return [replace(entry) for entry in self.notification_logs if entry.notification_id == notification_id]

    async def list_redeliverable_notifications(self, *, max_attempts: int, created_after: datetime) -> List[Notification]:
        attempts: Dict[str, List[NotificationLog]] = {}
        for entry in self.notification_logs:
            attempts.setdefault(entry.notification_id, []).append(entry)
        result: List[Notification] = []
        for notification_id, entries in attempts.items():
            notification = self.notifications.get(notification_id)
            if notification is None or notification.created_at < created_after:
                continue
            if len(entries) >= max_attempts:
                continue
            if any(entry.success or entry.permanent for entry in entries):
                continue
            result.append(notification)
        return sorted(result, key=lambda item: item.created_at)


__all__ = [
    "IN_QUERY_LIMIT",
    "InMemoryModerationStore",
    "ModerationStore",
    "ReportEventSource",
    "chunked",
    "new_id",
]
