from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

from modconsole.moderation.domain.container import build_runtime
from modconsole.moderation.domain.errors import PushDeliveryError
from modconsole.moderation.domain.models import Post, PushMessage, User
from modconsole.moderation.domain.repository import InMemoryModerationStore

STAFF_IDS = ("admin-1", "admin-2")


@dataclass
class StubPushSender:
	"""Records outgoing pushes; ``failures`` are raised in order before succeeding."""

	sent: List[PushMessage] = field(default_factory=list)
	failures: List[PushDeliveryError] = field(default_factory=list)
	attempts: int = 0

	async def send(self, message: PushMessage) -> str:
		self.attempts += 1
		if self.failures:
			raise self.failures.pop(0)
		self.sent.append(message)
		return f"projects/test/messages/{len(self.sent)}"


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from modconsole.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture
def push() -> StubPushSender:
	return StubPushSender()


@pytest.fixture
def store() -> InMemoryModerationStore:
	return InMemoryModerationStore()


@pytest_asyncio.fixture
async def runtime(push, store):
	rt = build_runtime(push=push, store=store, staff_ids=STAFF_IDS)
	await rt.start()
	try:
		yield rt
	finally:
		await rt.stop()


@pytest_asyncio.fixture
async def api_client(runtime):
	from modconsole.main import create_app
	app = create_app(runtime)
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@pytest.fixture
def make_user(store):
	async def _make(user_id: str, *, push_token: Optional[str] = "token-abcdef-123456") -> User:
		return await store.create_user(User(id=user_id, name=user_id, push_token=push_token))

	return _make


@pytest.fixture
def make_post(store):
	async def _make(post_id: str, user_id: str, *, report_count: int = 0) -> Post:
		return await store.create_post(Post(id=post_id, user_id=user_id, content="hello", report_count=report_count))

	return _make
