from __future__ import annotations

import json

import httpx
import pytest

from modconsole.moderation.domain.errors import PushDeliveryError
from modconsole.moderation.domain.models import PushMessage
from modconsole.moderation.infra.push import FcmPushSender, LoggingPushSender, build_fcm_payload


def _message() -> PushMessage:
    return PushMessage(
        token="device-token",
        title="Post Removed",
        body="Your post was removed",
        data={"notification_id": "n1", "type": "post_removed"},
        android_channel="general",
        sound="default",
        category="POST_REMOVED",
        badge=3,
    )


def test_payload_carries_platform_fields() -> None:
    payload = build_fcm_payload(_message())["message"]
    assert payload["token"] == "device-token"
    assert payload["notification"] == {"title": "Post Removed", "body": "Your post was removed"}
    assert payload["android"]["notification"]["channel_id"] == "general"
    assert payload["apns"]["payload"]["aps"] == {"sound": "default", "badge": 3, "category": "POST_REMOVED"}


@pytest.mark.asyncio
async def test_send_returns_message_name() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"name": "projects/demo/messages/42"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        sender = FcmPushSender(http=http, project_id="demo", access_token="secret", base_url="https://fcm.test/")
        message_id = await sender.send(_message())

    assert message_id == "projects/demo/messages/42"
    assert seen["url"] == "https://fcm.test/v1/projects/demo/messages:send"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["message"]["data"]["type"] == "post_removed"


@pytest.mark.asyncio
async def test_unregistered_token_is_permanent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            404,
            json={
                "error": {
                    "status": "NOT_FOUND",
                    "message": "Requested entity was not found.",
                    "details": [{"errorCode": "UNREGISTERED"}],
                }
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        sender = FcmPushSender(http=http, project_id="demo", access_token="secret")
        with pytest.raises(PushDeliveryError) as excinfo:
            await sender.send(_message())

    assert excinfo.value.permanent is True
    assert excinfo.value.reason.startswith("NOT_FOUND: UNREGISTERED")


@pytest.mark.asyncio
async def test_invalid_registration_token_is_permanent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={
                "error": {
                    "code": 400,
                    "status": "INVALID_ARGUMENT",
                    "message": "The registration token is not a valid FCM registration token",
                    "details": [{"errorCode": "INVALID_ARGUMENT"}],
                }
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        sender = FcmPushSender(http=http, project_id="demo", access_token="secret")
        with pytest.raises(PushDeliveryError) as excinfo:
            await sender.send(_message())

    assert excinfo.value.permanent is True
    assert excinfo.value.reason.startswith("INVALID_ARGUMENT")


@pytest.mark.asyncio
async def test_other_invalid_argument_stays_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={
                "error": {
                    "status": "INVALID_ARGUMENT",
                    "message": "Invalid value at 'message.android.notification.notification_count'",
                    "details": [{"errorCode": "INVALID_ARGUMENT"}],
                }
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        sender = FcmPushSender(http=http, project_id="demo", access_token="secret")
        with pytest.raises(PushDeliveryError) as excinfo:
            await sender.send(_message())

    assert excinfo.value.permanent is False


@pytest.mark.asyncio
async def test_server_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        sender = FcmPushSender(http=http, project_id="demo", access_token="secret")
        with pytest.raises(PushDeliveryError) as excinfo:
            await sender.send(_message())

    assert excinfo.value.permanent is False
    assert excinfo.value.reason == "http_503"


@pytest.mark.asyncio
async def test_timeout_maps_to_transient_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        sender = FcmPushSender(http=http, project_id="demo", access_token="secret")
        with pytest.raises(PushDeliveryError) as excinfo:
            await sender.send(_message())

    assert excinfo.value.reason == "timeout"
    assert excinfo.value.permanent is False


@pytest.mark.asyncio
async def test_logging_sender_records_messages() -> None:
    sender = LoggingPushSender()
    message_id = await sender.send(_message())
    assert message_id.startswith("local-")
    assert sender.sent == [_message()]
