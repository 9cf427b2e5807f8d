"""PostgreSQL-backed moderation store."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import AsyncIterator, Collection, List, Mapping, Optional, Sequence, Tuple

import asyncpg
from redis.asyncio import Redis

from modconsole.infra.redis import RedisProxy
from modconsole.moderation.domain.errors import NotFoundError, TransientStoreError, ValidationError
from modconsole.moderation.domain.models import (
    Announcement,
    AnnouncementStatus,
    Notification,
    NotificationLog,
    NotificationType,
    Post,
    PostStatus,
    Report,
    ReportStatus,
    User,
    UserStatus,
)
from modconsole.moderation.domain.repository import IN_QUERY_LIMIT, ReportCreatedHandler, Unsubscribe
from modconsole.moderation.workers.report_events import RedisReportEventSource

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)

# whitelisted column names used when building dynamic SQL
_DUE_COLUMNS = {"start_date": "start_date", "end_date": "end_date"}
_ANNOUNCEMENT_STAMPS = {"approved_at", "rejected_at", "removed_at", "updated_at"}

_POST_COLUMNS = (
    "id, user_id, content, status, report_count, is_warned, removed_at, removed_reason, created_at, updated_at"
)
_REPORT_COLUMNS = (
    "id, reporter_id, reported_user_id, post_id, category, description, report_count, status, auto_removed, "
    "created_at, updated_at"
)
_ANNOUNCEMENT_COLUMNS = (
    "id, title, department, body, start_date, end_date, status, is_urgent, created_by, submitted_at, "
    "approved_at, rejected_at, removed_at, updated_at"
)
_USER_COLUMNS = (
    "id, name, email, status, warning_count, last_warning_at, suspend_count, suspended_at, suspend_expires_at, "
    "banned_at, ban_expires_at, push_token, last_status_update"
)
_NOTIFICATION_COLUMNS = (
    "id, user_id, type, title, message, related_post_id, admin_id, data, dedupe_key, created_at, is_read"
)


class PostgresModerationStore:
    """Persists moderation entities using asyncpg and publishes report events to Redis."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        redis: Redis | RedisProxy | None = None,
        *,
        report_stream: str = "mod:reports",
    ) -> None:
        self.pool = pool
        self.redis = redis
        self.report_stream = report_stream

    @contextlib.asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _TRANSIENT_ERRORS as exc:
            raise TransientStoreError(str(exc) or "store_unavailable") from exc

    # posts
    async def create_post(self, post: Post) -> Post:
        query = f"""
        INSERT INTO posts ({_POST_COLUMNS})
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
        RETURNING {_POST_COLUMNS}
        """
        async with self._connection() as conn:
            record = await conn.fetchrow(
                query,
                post.id,
                post.user_id,
                post.content,
                post.status.value,
                post.report_count,
                post.is_warned,
                post.removed_at,
                post.removed_reason,
                post.created_at,
                post.updated_at,
            )
        if record is None:
            raise TransientStoreError("post_insert_returned_no_row")
        return _post_from_record(record)

    async def get_post(self, post_id: str) -> Post | None:
        async with self._connection() as conn:
            record = await conn.fetchrow(f"SELECT {_POST_COLUMNS} FROM posts WHERE id = $1", post_id)
        return _post_from_record(record) if record else None

    async def increment_post_report_count(self, post_id: str, *, now: datetime) -> int:
        query = "UPDATE posts SET report_count = report_count + 1, updated_at = $2 WHERE id = $1 RETURNING report_count"
        async with self._connection() as conn:
            value = await conn.fetchval(query, post_id, now)
        if value is None:
            raise NotFoundError(f"post_not_found:{post_id}")
        return int(value)

    async def remove_post_if_not_removed(self, post_id: str, *, reason: str, now: datetime) -> Tuple[Post, bool]:
        query = f"""
        UPDATE posts
        SET status = 'removed', removed_at = $2, removed_reason = $3, updated_at = $2
        WHERE id = $1 AND status <> 'removed'
        RETURNING {_POST_COLUMNS}
        """
        async with self._connection() as conn:
            record = await conn.fetchrow(query, post_id, now, reason)
            if record is not None:
                return _post_from_record(record), True
            current = await conn.fetchrow(f"SELECT {_POST_COLUMNS} FROM posts WHERE id = $1", post_id)
        if current is None:
            raise NotFoundError(f"post_not_found:{post_id}")
        return _post_from_record(current), False

    async def mark_post_warned(self, post_id: str, *, now: datetime) -> Post:
        query = f"UPDATE posts SET is_warned = TRUE, updated_at = $2 WHERE id = $1 RETURNING {_POST_COLUMNS}"
        async with self._connection() as conn:
            record = await conn.fetchrow(query, post_id, now)
        if record is None:
            raise NotFoundError(f"post_not_found:{post_id}")
        return _post_from_record(record)

    async def list_post_ids_for_user(self, user_id: str) -> List[str]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT id FROM posts WHERE user_id = $1 ORDER BY id", user_id)
        return [str(row["id"]) for row in rows]

    async def list_posts_with_min_reports(self, min_count: int, *, exclude: Collection[PostStatus]) -> List[Post]:
        query = f"""
        SELECT {_POST_COLUMNS} FROM posts
        WHERE report_count >= $1 AND NOT (status = ANY($2::text[]))
        ORDER BY report_count DESC
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, min_count, [status.value for status in exclude])
        return [_post_from_record(row) for row in rows]

    # reports
    async def create_report(self, report: Report) -> Report:
        query = f"""
        INSERT INTO reports ({_REPORT_COLUMNS})
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
        RETURNING {_REPORT_COLUMNS}
        """
        async with self._connection() as conn:
            record = await conn.fetchrow(
                query,
                report.id,
                report.reporter_id,
                report.reported_user_id,
                report.post_id,
                report.category,
                report.description,
                report.report_count,
                report.status.value,
                report.auto_removed,
                report.created_at,
                report.updated_at,
            )
        if record is None:
            raise TransientStoreError("report_insert_returned_no_row")
        stored = _report_from_record(record)
        await self._publish_report_created(stored)
        return stored

    async def _publish_report_created(self, report: Report) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.xadd(
                self.report_stream,
                {
                    "report_id": report.id,
                    "post_id": report.post_id,
                    "category": report.category,
                    "report_count": str(report.report_count),
                },
            )
        except Exception:  # noqa: BLE001 - the pending row is picked up by report reconciliation
            logger.exception("failed to publish report event", extra={"report_id": report.id})

    async def get_report(self, report_id: str) -> Report | None:
        async with self._connection() as conn:
            record = await conn.fetchrow(f"SELECT {_REPORT_COLUMNS} FROM reports WHERE id = $1", report_id)
        return _report_from_record(record) if record else None

    async def update_report_if(
        self,
        report_id: str,
        *,
        expected: ReportStatus,
        status: ReportStatus,
        now: datetime,
        auto_removed: Optional[bool] = None,
    ) -> Report | None:
        query = f"""
        UPDATE reports
        SET status = $3, updated_at = $4, auto_removed = COALESCE($5, auto_removed)
        WHERE id = $1 AND status = $2
        RETURNING {_REPORT_COLUMNS}
        """
        async with self._connection() as conn:
            record = await conn.fetchrow(query, report_id, expected.value, status.value, now, auto_removed)
            if record is not None:
                return _report_from_record(record)
            exists = await conn.fetchval("SELECT 1 FROM reports WHERE id = $1", report_id)
        if exists is None:
            raise NotFoundError(f"report_not_found:{report_id}")
        return None

    async def resolve_pending_reports_for_posts(self, post_ids: Sequence[str], *, updated_at: datetime) -> List[str]:
        if len(post_ids) > IN_QUERY_LIMIT:
            raise ValidationError(f"in_query_limit_exceeded:{len(post_ids)}")
        query = """
        UPDATE reports SET status = 'resolved', updated_at = $2
        WHERE post_id = ANY($1::text[]) AND status = 'pending'
        RETURNING id
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, list(post_ids), updated_at)
        return [str(row["id"]) for row in rows]

    async def list_pending_reports(
        self,
        categories: Collection[str],
        *,
        created_before: datetime,
        limit: int,
    ) -> List[Report]:
        query = f"""
        SELECT {_REPORT_COLUMNS} FROM reports
        WHERE status = 'pending' AND category = ANY($1::text[]) AND created_at <= $2
        ORDER BY created_at
        LIMIT $3
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, list(categories), created_before, limit)
        return [_report_from_record(row) for row in rows]

    async def count_reports_by_category_and_status(self) -> List[Tuple[str, ReportStatus, int]]:
        query = """
        SELECT category, status, COUNT(*) AS total
        FROM reports
        GROUP BY category, status
        ORDER BY category, status
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query)
        return [(str(row["category"]), ReportStatus(row["status"]), int(row["total"])) for row in rows]

    async def subscribe_report_created(self, handler: ReportCreatedHandler) -> Unsubscribe:
        if self.redis is None:
            raise RuntimeError("report events require a redis client")
        source = RedisReportEventSource(self.redis, self, stream_key=self.report_stream)
        return await source.subscribe_report_created(handler)

    # announcements
    async def create_announcement(self, announcement: Announcement) -> Announcement:
        query = f"""
        INSERT INTO announcements ({_ANNOUNCEMENT_COLUMNS})
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
        RETURNING {_ANNOUNCEMENT_COLUMNS}
        """
        async with self._connection() as conn:
            record = await conn.fetchrow(
                query,
                announcement.id,
                announcement.title,
                announcement.department,
                announcement.body,
                announcement.start_date,
                announcement.end_date,
                announcement.status.value,
                announcement.is_urgent,
                announcement.created_by,
                announcement.submitted_at,
                announcement.approved_at,
                announcement.rejected_at,
                announcement.removed_at,
                announcement.updated_at,
            )
        if record is None:
            raise TransientStoreError("announcement_insert_returned_no_row")
        return _announcement_from_record(record)

    async def get_announcement(self, announcement_id: str) -> Announcement | None:
        async with self._connection() as conn:
            record = await conn.fetchrow(
                f"SELECT {_ANNOUNCEMENT_COLUMNS} FROM announcements WHERE id = $1",
                announcement_id,
            )
        return _announcement_from_record(record) if record else None

    async def update_announcement_if(
        self,
        announcement_id: str,
        *,
        expected: Collection[AnnouncementStatus],
        status: AnnouncementStatus,
        stamps: Mapping[str, datetime],
    ) -> Announcement | None:
        unknown = set(stamps) - _ANNOUNCEMENT_STAMPS
        if unknown:
            raise ValueError(f"unsupported announcement columns {sorted(unknown)}")
        assignments = ["status = $3"]
        args: list[object] = [announcement_id, [item.value for item in expected], status.value]
        for column, value in stamps.items():
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")
        query = f"""
        UPDATE announcements SET {", ".join(assignments)}
        WHERE id = $1 AND status = ANY($2::text[])
        RETURNING {_ANNOUNCEMENT_COLUMNS}
        """
        async with self._connection() as conn:
            record = await conn.fetchrow(query, *args)
            if record is not None:
                return _announcement_from_record(record)
            exists = await conn.fetchval("SELECT 1 FROM announcements WHERE id = $1", announcement_id)
        if exists is None:
            raise NotFoundError(f"announcement_not_found:{announcement_id}")
        return None

    async def list_announcements_due(
        self,
        status: AnnouncementStatus,
        *,
        due_field: str,
        now: datetime,
    ) -> List[Announcement]:
        column = _DUE_COLUMNS[due_field]
        query = f"""
        SELECT {_ANNOUNCEMENT_COLUMNS} FROM announcements
        WHERE status = $1 AND {column} <= $2
        ORDER BY {column}
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, status.value, now)
        return [_announcement_from_record(row) for row in rows]

    async def transition_announcements(
        self,
        announcement_ids: Sequence[str],
        *,
        from_status: AnnouncementStatus,
        to_status: AnnouncementStatus,
        due_field: str,
        now: datetime,
    ) -> List[str]:
        if not announcement_ids:
            return []
        column = _DUE_COLUMNS[due_field]
        # one statement: every row commits together, each re-checking its own status and date
        query = f"""
        UPDATE announcements SET status = $3, updated_at = $4
        WHERE id = ANY($1::text[]) AND status = $2 AND {column} <= $4
        RETURNING id
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, list(announcement_ids), from_status.value, to_status.value, now)
        return [str(row["id"]) for row in rows]

    async def list_pending_announcements_starting_before(self, cutoff: datetime) -> List[Announcement]:
        query = f"""
        SELECT {_ANNOUNCEMENT_COLUMNS} FROM announcements
        WHERE status = 'pending' AND start_date <= $1
        ORDER BY start_date
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, cutoff)
        return [_announcement_from_record(row) for row in rows]

    # users
    async def create_user(self, user: User) -> User:
        query = f"""
        INSERT INTO users ({_USER_COLUMNS})
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
        RETURNING {_USER_COLUMNS}
        """
        async with self._connection() as conn:
            record = await conn.fetchrow(
                query,
                user.id,
                user.name,
                user.email,
                user.status.value,
                user.warning_count,
                user.last_warning_at,
                user.suspend_count,
                user.suspended_at,
                user.suspend_expires_at,
                user.banned_at,
                user.ban_expires_at,
                user.push_token,
                user.last_status_update,
            )
        if record is None:
            raise TransientStoreError("user_insert_returned_no_row")
        return _user_from_record(record)

    async def get_user(self, user_id: str) -> User | None:
        async with self._connection() as conn:
            record = await conn.fetchrow(f"SELECT {_USER_COLUMNS} FROM users WHERE id = $1", user_id)
        return _user_from_record(record) if record else None

    async def record_user_warning(self, user_id: str, *, now: datetime) -> User:
        query = f"""
        UPDATE users
        SET warning_count = warning_count + 1,
            last_warning_at = $2,
            last_status_update = $2,
            status = CASE WHEN status IN ('suspended', 'banned') THEN status ELSE 'warning' END
        WHERE id = $1
        RETURNING {_USER_COLUMNS}
        """
        return await self._update_user(query, user_id, now)

    async def apply_user_suspension(self, user_id: str, *, now: datetime, expires_at: datetime) -> User:
        query = f"""
        UPDATE users
        SET status = 'suspended', suspended_at = $2, suspend_expires_at = $3,
            suspend_count = suspend_count + 1, last_status_update = $2
        WHERE id = $1
        RETURNING {_USER_COLUMNS}
        """
        return await self._update_user(query, user_id, now, expires_at)

    async def apply_user_ban(self, user_id: str, *, now: datetime, expires_at: datetime | None) -> User:
        query = f"""
        UPDATE users
        SET status = 'banned', banned_at = $2, ban_expires_at = $3, last_status_update = $2
        WHERE id = $1
        RETURNING {_USER_COLUMNS}
        """
        return await self._update_user(query, user_id, now, expires_at)

    async def reinstate_user(self, user_id: str, *, now: datetime) -> User:
        query = f"""
        UPDATE users
        SET status = 'active', banned_at = NULL, ban_expires_at = NULL, suspend_expires_at = NULL,
            last_status_update = $2
        WHERE id = $1
        RETURNING {_USER_COLUMNS}
        """
        return await self._update_user(query, user_id, now)

    async def reset_user_warnings(self, user_id: str, *, now: datetime) -> User:
        query = f"""
        UPDATE users
        SET warning_count = 0,
            last_status_update = $2,
            status = CASE WHEN status = 'warning' THEN 'active' ELSE status END
        WHERE id = $1
        RETURNING {_USER_COLUMNS}
        """
        return await self._update_user(query, user_id, now)

    async def _update_user(self, query: str, user_id: str, *args: object) -> User:
        async with self._connection() as conn:
            record = await conn.fetchrow(query, user_id, *args)
        if record is None:
            raise NotFoundError(f"user_not_found:{user_id}")
        return _user_from_record(record)

    async def clear_push_token(self, user_id: str, token: str) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                "UPDATE users SET push_token = NULL WHERE id = $1 AND push_token = $2",
                user_id,
                token,
            )
        return result.endswith(" 1")

    # notifications
    async def create_notification(self, notification: Notification) -> Tuple[Notification, bool]:
        query = f"""
        INSERT INTO notifications ({_NOTIFICATION_COLUMNS})
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11)
        ON CONFLICT (dedupe_key) DO NOTHING
        RETURNING {_NOTIFICATION_COLUMNS}
        """
        async with self._connection() as conn:
            record = await conn.fetchrow(
                query,
                notification.id,
                notification.user_id,
                notification.type.value,
                notification.title,
                notification.message,
                notification.related_post_id,
                notification.admin_id,
                dict(notification.data),
                notification.dedupe_key,
                notification.created_at,
                notification.is_read,
            )
            if record is not None:
                return _notification_from_record(record), True
            existing = await conn.fetchrow(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE dedupe_key = $1",
                notification.dedupe_key,
            )
        if existing is None:
            # the conflicting row vanished between the insert and the lookup
            raise TransientStoreError(f"notification_dedupe_lookup_failed:{notification.dedupe_key}")
        return _notification_from_record(existing), False

    async def get_notification(self, notification_id: str) -> Notification | None:
        async with self._connection() as conn:
            record = await conn.fetchrow(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE id = $1",
                notification_id,
            )
        return _notification_from_record(record) if record else None

    async def count_unread_notifications(self, user_id: str) -> int:
        async with self._connection() as conn:
            value = await conn.fetchval(
                "SELECT COUNT(*) FROM notifications WHERE user_id = $1 AND NOT is_read",
                user_id,
            )
        return int(value or 0)

    async def append_notification_log(self, entry: NotificationLog) -> None:
        query = """
        INSERT INTO notification_logs
            (notification_id, user_id, type, sent_at, success, message_id, token_preview, error, permanent)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
        """
        async with self._connection() as conn:
            await conn.execute(
                query,
                entry.notification_id,
                entry.user_id,
                entry.type.value,
                entry.sent_at,
                entry.success,
                entry.message_id,
                entry.token_preview,
                entry.error,
                entry.permanent,
            )

    async def list_notification_logs(self, notification_id: str) -> List[NotificationLog]:
        query = """
        SELECT notification_id, user_id, type, sent_at, success, message_id, token_preview, error, permanent
        FROM notification_logs WHERE notification_id = $1 ORDER BY sent_at
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, notification_id)
        return [_log_from_record(row) for row in rows]

    async def list_redeliverable_notifications(self, *, max_attempts: int, created_after: datetime) -> List[Notification]:
        columns = ", ".join(f"n.{name.strip()}" for name in _NOTIFICATION_COLUMNS.split(","))
        query = f"""
        SELECT {columns}
        FROM notifications n
        JOIN (
            SELECT notification_id,
                   COUNT(*) AS attempts,
                   BOOL_OR(success) AS any_success,
                   BOOL_OR(permanent) AS any_permanent
            FROM notification_logs
            GROUP BY notification_id
        ) l ON l.notification_id = n.id
        WHERE n.created_at >= $2 AND l.attempts < $1 AND NOT l.any_success AND NOT l.any_permanent
        ORDER BY n.created_at
        """
        async with self._connection() as conn:
            rows = await conn.fetch(query, max_attempts, created_after)
        return [_notification_from_record(row) for row in rows]


def _post_from_record(record: Mapping[str, object]) -> Post:
    return Post(
        id=str(record["id"]),
        user_id=str(record["user_id"]),
        content=record["content"] or "",
        status=PostStatus(record["status"]),
        report_count=int(record["report_count"]),
        is_warned=bool(record["is_warned"]),
        removed_at=record["removed_at"],
        removed_reason=record["removed_reason"],
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _report_from_record(record: Mapping[str, object]) -> Report:
    return Report(
        id=str(record["id"]),
        reporter_id=str(record["reporter_id"]),
        reported_user_id=str(record["reported_user_id"]),
        post_id=str(record["post_id"]),
        category=str(record["category"]),
        description=record["description"] or "",
        report_count=int(record["report_count"]),
        status=ReportStatus(record["status"]),
        auto_removed=bool(record["auto_removed"]),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _announcement_from_record(record: Mapping[str, object]) -> Announcement:
    return Announcement(
        id=str(record["id"]),
        title=str(record["title"]),
        department=record["department"] or "",
        body=record["body"] or "",
        start_date=record["start_date"],
        end_date=record["end_date"],
        status=AnnouncementStatus.coerce(record["status"]),
        is_urgent=bool(record["is_urgent"]),
        created_by=record["created_by"],
        submitted_at=record["submitted_at"],
        approved_at=record["approved_at"],
        rejected_at=record["rejected_at"],
        removed_at=record["removed_at"],
        updated_at=record["updated_at"],
    )


def _user_from_record(record: Mapping[str, object]) -> User:
    return User(
        id=str(record["id"]),
        name=record["name"] or "",
        email=record["email"],
        status=UserStatus(record["status"]),
        warning_count=int(record["warning_count"]),
        last_warning_at=record["last_warning_at"],
        suspend_count=int(record["suspend_count"]),
        suspended_at=record["suspended_at"],
        suspend_expires_at=record["suspend_expires_at"],
        banned_at=record["banned_at"],
        ban_expires_at=record["ban_expires_at"],
        push_token=record["push_token"],
        last_status_update=record["last_status_update"],
    )


def _notification_from_record(record: Mapping[str, object]) -> Notification:
    return Notification(
        id=str(record["id"]),
        user_id=str(record["user_id"]),
        type=NotificationType(record["type"]),
        title=str(record["title"]),
        message=str(record["message"]),
        related_post_id=record["related_post_id"],
        admin_id=record["admin_id"],
        data=dict(record["data"] or {}),
        dedupe_key=record["dedupe_key"],
        created_at=record["created_at"],
        is_read=bool(record["is_read"]),
    )


def _log_from_record(record: Mapping[str, object]) -> NotificationLog:
    return NotificationLog(
        notification_id=str(record["notification_id"]),
        user_id=str(record["user_id"]),
        type=NotificationType(record["type"]),
        sent_at=record["sent_at"],
        success=bool(record["success"]),
        message_id=record["message_id"],
        token_preview=record["token_preview"],
        error=record["error"],
        permanent=bool(record["permanent"]),
    )


__all__ = ["PostgresModerationStore"]
