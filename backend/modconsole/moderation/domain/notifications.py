"""Durable notification records with best-effort push delivery."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping, Optional, Protocol

from modconsole.moderation.domain.errors import PushDeliveryError, ValidationError
from modconsole.moderation.domain.models import (
    Announcement,
    Notification,
    NotificationLog,
    NotificationType,
    PushMessage,
)
from modconsole.moderation.domain.repository import ModerationStore, new_id
from modconsole.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

COMMUNITY_WARNING_TITLE = "Community Guidelines Warning"
DEFAULT_COMMUNITY_WARNING = (
    "A post you shared was reviewed by our admin team after being reported. "
    "We encourage you to review our community guidelines to help keep the community positive and respectful. "
    "Repeated violations may lead to temporary restrictions or permanent ban."
)
PERMANENT_BAN_TITLE = "Account Permanently Banned"
POST_REMOVED_TITLE = "Post Removed"

_PERMANENT_TOKEN_MARKERS = (
    "invalid-registration-token",
    "registration-token-not-registered",
    "unregistered",
)

_ANDROID_CHANNELS: Mapping[NotificationType, str] = {
    NotificationType.WARNING: "warnings",
    NotificationType.BAN: "moderation",
    NotificationType.ANNOUNCEMENT: "announcements",
}

_SOUNDS: Mapping[NotificationType, str] = {
    NotificationType.WARNING: "alert.caf",
    NotificationType.BAN: "alert.caf",
    NotificationType.ANNOUNCEMENT: "announcement.caf",
}


class PushSender(Protocol):
    async def send(self, message: PushMessage) -> str:
        """Deliver a push message and return the transport message id.

        Raises ``PushDeliveryError`` on failure.
        """


def is_permanent_token_error(reason: str) -> bool:
    lowered = (reason or "").lower()
    if any(marker in lowered for marker in _PERMANENT_TOKEN_MARKERS):
        return True
    # FCM v1 reports a malformed token as INVALID_ARGUMENT naming the registration token
    return "invalid_argument" in lowered and "registration token" in lowered


def truncate_body(message: str, limit: int = 100) -> str:
    if len(message) <= limit:
        return message
    return f"{message[: max(0, limit - 3)]}..."


def token_preview(token: str) -> str:
    return f"{token[:10]}..."


def android_channel_for(notification_type: NotificationType) -> str:
    return _ANDROID_CHANNELS.get(notification_type, "general")


def sound_for(notification_type: NotificationType) -> str:
    return _SOUNDS.get(notification_type, "default")


def temporary_ban_title(duration: str) -> str:
    return f"Temporary Account Restriction - {duration}"


def temporary_ban_message(duration: str, reason: str) -> str:
    return (
        f"Your account has been temporarily restricted for {duration} due to: {reason}. "
        "You will not be able to post during this period. "
        "Please review our community guidelines to avoid future restrictions."
    )


def permanent_ban_message(reason: str) -> str:
    return (
        "Your account has been permanently banned due to repeated violations of our community guidelines. "
        f"Reason: {reason}. This decision is final and your access to the platform has been revoked."
    )


def post_removed_message(category: str) -> str:
    return f"Your post was removed due to a {category.replace('_', ' ')} violation."


def format_duration(days: int) -> str:
    return "1 day" if days == 1 else f"{days} days"


@dataclass
class NotificationDispatcher:
    """Records notifications first, then attempts push delivery without surfacing failures."""

    store: ModerationStore
    push: PushSender
    body_max_chars: int = 100
    push_timeout_seconds: Optional[float] = None
    max_attempts: int = 2
    redelivery_window_hours: int = 24

    async def dispatch(
        self,
        user_id: str,
        type: NotificationType | str,  # noqa: A002
        title: str,
        message: str,
        *,
        related_post_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        now: datetime | None = None,
    ) -> str:
        try:
            notification_type = NotificationType(type)
        except ValueError as exc:
            raise ValidationError(f"unknown_notification_type:{type}") from exc
        missing = [name for name, value in (("user_id", user_id), ("title", title), ("message", message)) if not value]
        if missing:
            raise ValidationError("missing_notification_fields", errors=[f"{name} is required" for name in missing])

        notification = Notification(
            id=new_id(),
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            related_post_id=related_post_id,
            admin_id=admin_id,
            data=dict(data or {}),
            dedupe_key=dedupe_key,
            created_at=now or datetime.now(timezone.utc),
        )
        stored, created = await self.store.create_notification(notification)
        obs_metrics.notification_persisted(notification_type.value, "created" if created else "deduped")
        if not created:
            logger.info(
                "notification deduplicated",
                extra={"notification_id": stored.id, "dedupe_key": dedupe_key, "user_id": user_id},
            )
            return stored.id
        await self.deliver(stored)
        return stored.id

    async def deliver(self, notification: Notification) -> bool:
        """Attempt one push for ``notification``. Never raises; returns True on success."""
        try:
            user = await self.store.get_user(notification.user_id)
        except Exception:  # noqa: BLE001
            logger.exception("push token lookup failed", extra={"notification_id": notification.id})
            obs_metrics.push_delivery("lookup_failed")
            return False
        token = user.push_token if user else None
        if not token:
            logger.info(
                "no push token for user, skipping delivery",
                extra={"user_id": notification.user_id, "notification_id": notification.id},
            )
            obs_metrics.push_delivery("no_token")
            return False

        message = await self.build_message(notification, token)
        started = time.perf_counter()
        try:
            if self.push_timeout_seconds:
                message_id = await asyncio.wait_for(self.push.send(message), timeout=self.push_timeout_seconds)
            else:
                message_id = await self.push.send(message)
        except PushDeliveryError as exc:
            permanent = exc.permanent or is_permanent_token_error(exc.reason)
            await self._record_failure(notification, token, exc.reason, permanent=permanent)
            return False
        except asyncio.TimeoutError:
            await self._record_failure(notification, token, "timeout", permanent=False)
            return False
        except Exception as exc:  # noqa: BLE001
            await self._record_failure(notification, token, str(exc) or exc.__class__.__name__, permanent=False)
            return False
        finally:
            obs_metrics.MOD_PUSH_LATENCY_SECONDS.observe(time.perf_counter() - started)

        obs_metrics.push_delivery("sent")
        await self._append_log(
            NotificationLog(
                notification_id=notification.id,
                user_id=notification.user_id,
                type=notification.type,
                sent_at=datetime.now(timezone.utc),
                success=True,
                message_id=message_id,
                token_preview=token_preview(token),
            )
        )
        return True

    async def build_message(self, notification: Notification, token: str) -> PushMessage:
        try:
            badge = await self.store.count_unread_notifications(notification.user_id)
        except Exception:  # noqa: BLE001
            logger.warning("unread count failed, using zero badge", extra={"user_id": notification.user_id})
            badge = 0
        data = {key: str(value) for key, value in notification.data.items()}
        data["notification_id"] = notification.id
        data["type"] = notification.type.value
        if notification.related_post_id:
            data["related_post_id"] = notification.related_post_id
        return PushMessage(
            token=token,
            title=notification.title,
            body=truncate_body(notification.message, self.body_max_chars),
            data=data,
            android_channel=android_channel_for(notification.type),
            sound=sound_for(notification.type),
            category=notification.type.value.upper(),
            badge=badge,
        )

    async def redeliver_failed(self, *, now: datetime | None = None) -> List[str]:
        """Retry push for notifications whose earlier attempts all failed transiently."""
        now = now or datetime.now(timezone.utc)
        created_after = now - timedelta(hours=self.redelivery_window_hours)
        candidates = await self.store.list_redeliverable_notifications(
            max_attempts=self.max_attempts,
            created_after=created_after,
        )
        delivered: List[str] = []
        for notification in candidates:
            if await self.deliver(notification):
                delivered.append(notification.id)
        if candidates:
            logger.info(
                "notification redelivery pass",
                extra={"candidates": len(candidates), "delivered": len(delivered)},
            )
        return delivered

    # canned messages

    async def send_community_warning(
        self,
        user_id: str,
        *,
        admin_id: Optional[str] = None,
        post_id: Optional[str] = None,
        message: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> str:
        return await self.dispatch(
            user_id,
            NotificationType.WARNING,
            COMMUNITY_WARNING_TITLE,
            (message or "").strip() or DEFAULT_COMMUNITY_WARNING,
            related_post_id=post_id,
            admin_id=admin_id,
            dedupe_key=dedupe_key,
        )

    async def send_temporary_ban(
        self,
        user_id: str,
        *,
        duration: str,
        reason: str,
        admin_id: Optional[str] = None,
    ) -> str:
        return await self.dispatch(
            user_id,
            NotificationType.BAN,
            temporary_ban_title(duration),
            temporary_ban_message(duration, reason),
            admin_id=admin_id,
            data={"duration": duration},
        )

    async def send_permanent_ban(self, user_id: str, *, reason: str, admin_id: Optional[str] = None) -> str:
        return await self.dispatch(
            user_id,
            NotificationType.BAN,
            PERMANENT_BAN_TITLE,
            permanent_ban_message(reason),
            admin_id=admin_id,
        )

    async def send_post_removed(
        self,
        *,
        user_id: str,
        post_id: str,
        report_id: str,
        category: str,
        dedupe_key: Optional[str] = None,
    ) -> str:
        return await self.dispatch(
            user_id,
            NotificationType.POST_REMOVED,
            POST_REMOVED_TITLE,
            post_removed_message(category),
            related_post_id=post_id,
            data={"post_id": post_id, "report_id": report_id, "category": category},
            dedupe_key=dedupe_key,
        )

    async def send_announcement(
        self,
        user_id: str,
        announcement: Announcement,
        *,
        message: str,
        admin_id: Optional[str] = None,
    ) -> str:
        return await self.dispatch(
            user_id,
            NotificationType.ANNOUNCEMENT,
            announcement.title,
            message,
            admin_id=admin_id,
            data={"announcement_id": announcement.id, "status": announcement.status.value},
            dedupe_key=f"announcement:{announcement.id}:{announcement.status.value}:{user_id}",
        )

    async def _record_failure(self, notification: Notification, token: str, reason: str, *, permanent: bool) -> None:
        obs_metrics.push_delivery("permanent_failure" if permanent else "failed")
        logger.warning(
            "push delivery failed",
            extra={
                "notification_id": notification.id,
                "user_id": notification.user_id,
                "reason": reason,
                "permanent": permanent,
            },
        )
        await self._append_log(
            NotificationLog(
                notification_id=notification.id,
                user_id=notification.user_id,
                type=notification.type,
                sent_at=datetime.now(timezone.utc),
                success=False,
                token_preview=token_preview(token),
                error=reason,
                permanent=permanent,
            )
        )
        if not permanent:
            return
        try:
            cleared = await self.store.clear_push_token(notification.user_id, token)
        except Exception:  # noqa: BLE001
            logger.exception("push token cleanup failed", extra={"user_id": notification.user_id})
            return
        if cleared:
            obs_metrics.MOD_PUSH_TOKENS_INVALIDATED_TOTAL.inc()
            logger.info("invalid push token removed", extra={"user_id": notification.user_id})

    async def _append_log(self, entry: NotificationLog) -> None:
        try:
            await self.store.append_notification_log(entry)
        except Exception:  # noqa: BLE001
            logger.exception("notification log write failed", extra={"notification_id": entry.notification_id})


__all__ = [
    "COMMUNITY_WARNING_TITLE",
    "DEFAULT_COMMUNITY_WARNING",
    "NotificationDispatcher",
    "PushSender",
    "format_duration",
    "is_permanent_token_error",
    "truncate_body",
]
