from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Iterator

import asyncpg
import pytest
import pytest_asyncio

from modconsole.infra import postgres
from modconsole.moderation.domain.configuration import ConfigurationActor
from modconsole.moderation.domain.models import (
    Announcement,
    AnnouncementStatus,
    Notification,
    NotificationType,
    Post,
    PostStatus,
    Report,
    ReportStatus,
    User,
    UserStatus,
)
from modconsole.moderation.infra.config_store import PostgresConfigurationStore
from modconsole.moderation.infra.postgres_repo import PostgresModerationStore

pytestmark = pytest.mark.asyncio

REPO_ROOT = Path(__file__).resolve().parents[3]

MIGRATIONS_DIR = REPO_ROOT / "migrations"


@pytest.fixture(scope="module")
def postgres_container() -> Iterator["PostgresContainer"]:
    testcontainers = pytest.importorskip(
        "testcontainers.postgres",
        reason="testcontainers.postgres is required for integration tests",
    )
    PostgresContainer = testcontainers.PostgresContainer
    container = PostgresContainer("postgres:16-alpine")
    try:
        container.start()
    except Exception as exc:  # pragma: no cover - environment without docker
        pytest.skip(f"unable to start postgres container: {exc}")
    try:
        yield container
    finally:
        container.stop()


async def _run_migrations(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("DROP SCHEMA IF EXISTS public CASCADE")
        await conn.execute("CREATE SCHEMA public")
        await conn.execute("GRANT ALL ON SCHEMA public TO PUBLIC")
        for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
            await conn.execute(path.read_text(encoding="utf-8"))


@pytest_asyncio.fixture(scope="function")
async def postgres_pool(postgres_container) -> AsyncIterator[asyncpg.Pool]:
    url = postgres_container.get_connection_url().replace("postgresql+psycopg2", "postgresql")
    pool = await asyncpg.create_pool(dsn=url, min_size=1, max_size=4, init=postgres.init_connection)
    await _run_migrations(pool)
    postgres.set_pool(pool)
    try:
        yield pool
    finally:
        postgres.set_pool(None)
        await pool.close()


@pytest.mark.integration
async def test_report_flow_round_trip(postgres_pool, fake_redis):
    store = PostgresModerationStore(postgres_pool, fake_redis)
    now = datetime.now(timezone.utc)
    await store.create_user(User(id="owner", name="Owner"))
    await store.create_post(Post(id="post-1", user_id="owner"))

    assert await store.increment_post_report_count("post-1", now=now) == 1
    await store.create_report(
        Report(
            id="r1",
            reporter_id="a",
            reported_user_id="owner",
            post_id="post-1",
            category="scam",
            report_count=1,
            created_at=now - timedelta(minutes=10),
        )
    )
    assert await fake_redis.xlen("mod:reports") == 1

    pending = await store.list_pending_reports(["scam"], created_before=now, limit=10)
    assert [report.id for report in pending] == ["r1"]

    removed, transitioned = await store.remove_post_if_not_removed("post-1", reason="scam", now=now)
    assert transitioned is True
    assert removed.status is PostStatus.REMOVED
    _, again = await store.remove_post_if_not_removed("post-1", reason="other", now=now)
    assert again is False

    assert await store.resolve_pending_reports_for_posts(["post-1"], updated_at=now) == ["r1"]
    assert (await store.get_report("r1")).status is ReportStatus.RESOLVED
    assert await store.count_reports_by_category_and_status() == [("scam", ReportStatus.RESOLVED, 1)]


@pytest.mark.integration
async def test_user_sanctions_and_reinstatement(postgres_pool):
    store = PostgresModerationStore(postgres_pool)
    now = datetime.now(timezone.utc)
    await store.create_user(User(id="owner"))

    warned = await store.record_user_warning("owner", now=now)
    assert warned.status is UserStatus.WARNING
    banned = await store.apply_user_ban("owner", now=now, expires_at=now + timedelta(days=3))
    assert banned.status is UserStatus.BANNED

    reinstated = await store.reinstate_user("owner", now=now)
    assert reinstated.status is UserStatus.ACTIVE
    assert reinstated.banned_at is None
    assert reinstated.ban_expires_at is None
    assert reinstated.warning_count == 1

    reset = await store.reset_user_warnings("owner", now=now)
    assert reset.warning_count == 0


@pytest.mark.integration
async def test_notification_dedupe_and_announcement_batch(postgres_pool):
    store = PostgresModerationStore(postgres_pool)
    now = datetime.now(timezone.utc)
    await store.create_user(User(id="admin-1"))

    first, created = await store.create_notification(
        Notification(
            id="n1",
            user_id="admin-1",
            type=NotificationType.URGENT_REVIEW,
            title="Urgent Review Required",
            message="review",
            data={"post_id": "post-1", "report_count": 10},
            dedupe_key="urgent_review:post-1:admin-1",
        )
    )
    assert created is True
    second, created = await store.create_notification(
        Notification(
            id="n2",
            user_id="admin-1",
            type=NotificationType.URGENT_REVIEW,
            title="Urgent Review Required",
            message="review",
            dedupe_key="urgent_review:post-1:admin-1",
        )
    )
    assert created is False
    assert second.id == first.id
    assert second.data == {"post_id": "post-1", "report_count": 10}

    await store.create_announcement(
        Announcement(
            id="a1",
            title="Fair",
            start_date=now - timedelta(hours=1),
            end_date=now + timedelta(days=1),
            status=AnnouncementStatus.SCHEDULED,
        )
    )
    moved = await store.transition_announcements(
        ["a1"],
        from_status=AnnouncementStatus.SCHEDULED,
        to_status=AnnouncementStatus.ACTIVE,
        due_field="start_date",
        now=now,
    )
    assert moved == ["a1"]
    assert await store.transition_announcements(
        ["a1"],
        from_status=AnnouncementStatus.SCHEDULED,
        to_status=AnnouncementStatus.ACTIVE,
        due_field="start_date",
        now=now,
    ) == []


@pytest.mark.integration
async def test_configuration_store_round_trip(postgres_pool, fake_redis):
    store = PostgresConfigurationStore(postgres_pool, fake_redis)

    initial = await store.get()
    assert initial.ban_threshold == 5

    updated = await store.update({"ban_threshold": 4}, ConfigurationActor(admin_id="admin-1"))
    assert updated.ban_threshold == 4
    assert (await store.get()).ban_threshold == 4

    logs = await store.list_logs(limit=5)
    assert [(entry.field, entry.old_value, entry.new_value) for entry in logs] == [("ban_threshold", 5, 4)]
    assert await fake_redis.xlen("mod:configuration") == 1
