"""Push senders: FCM HTTP v1 over httpx, and a logging sender for development."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List

import httpx

from modconsole.moderation.domain.errors import PushDeliveryError
from modconsole.moderation.domain.models import PushMessage
from modconsole.moderation.domain.notifications import is_permanent_token_error

logger = logging.getLogger(__name__)


def build_fcm_payload(message: PushMessage) -> Dict[str, Any]:
    return {
        "message": {
            "token": message.token,
            "notification": {"title": message.title, "body": message.body},
            "data": dict(message.data),
            "android": {
                "notification": {
                    "channel_id": message.android_channel,
                    "sound": "default",
                    "notification_count": message.badge,
                },
            },
            "apns": {
                "payload": {
                    "aps": {
                        "sound": message.sound,
                        "badge": message.badge,
                        "category": message.category,
                    },
                },
            },
        }
    }


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"http_{response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return f"http_{response.status_code}"
    codes = [
        str(detail.get("errorCode"))
        for detail in error.get("details") or []
        if isinstance(detail, dict) and detail.get("errorCode")
    ]
    parts = [str(error.get("status") or f"http_{response.status_code}"), *codes]
    if error.get("message"):
        parts.append(str(error["message"]))
    return ": ".join(parts)


@dataclass
class FcmPushSender:
    """Sends messages through the FCM HTTP v1 endpoint."""

    http: httpx.AsyncClient
    project_id: str
    access_token: str
    base_url: str = "https://fcm.googleapis.com"
    request_timeout: float = 10.0

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1/projects/{self.project_id}/messages:send"

    async def send(self, message: PushMessage) -> str:
        try:
            response = await self.http.post(
                self.endpoint,
                json=build_fcm_payload(message),
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.request_timeout,
            )
        except httpx.TimeoutException as exc:
            raise PushDeliveryError("timeout") from exc
        except httpx.HTTPError as exc:
            raise PushDeliveryError(f"transport_error: {exc}") from exc
        if response.status_code >= 400:
            reason = _error_reason(response)
            raise PushDeliveryError(reason, permanent=is_permanent_token_error(reason))
        body = response.json()
        return str(body.get("name", ""))


@dataclass
class LoggingPushSender:
    """Development sender: records messages instead of contacting a provider."""

    sent: List[PushMessage] = field(default_factory=list)

    async def send(self, message: PushMessage) -> str:
        self.sent.append(message)
        message_id = f"local-{uuid.uuid4().hex}"
        logger.info(
            "push message recorded",
            extra={"message_id": message_id, "title": message.title, "category": message.category},
        )
        return message_id


__all__ = ["FcmPushSender", "LoggingPushSender", "build_fcm_payload"]
