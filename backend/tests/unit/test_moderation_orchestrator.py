from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Sequence

import pytest

from modconsole.moderation.domain.configuration import ConfigurationActor
from modconsole.moderation.domain.container import build_runtime
from modconsole.moderation.domain.errors import PartialBatchError, StepFailedError
from modconsole.moderation.domain.models import (
    AggregateSeverity,
    AnnouncementStatus,
    Notification,
    NotificationType,
    Post,
    ReportStatus,
    User,
    UserStatus,
)
from modconsole.moderation.domain.notifications import PERMANENT_BAN_TITLE
from modconsole.moderation.domain.orchestrator import SanctionOutcome, urgent_review_dedupe_key
from modconsole.moderation.domain.repository import InMemoryModerationStore


@dataclass
class FailingChunkStore(InMemoryModerationStore):
    async def resolve_pending_reports_for_posts(self, post_ids: Sequence[str], *, updated_at: datetime) -> List[str]:
        if "p10" in post_ids:
            raise RuntimeError("store timeout")
        return await super().resolve_pending_reports_for_posts(post_ids, updated_at=updated_at)


@dataclass
class StuckRemovalStore(InMemoryModerationStore):
    stuck_post_ids: set = field(default_factory=set)

    async def remove_post_if_not_removed(self, post_id: str, *, reason: str, now: datetime):
        if post_id in self.stuck_post_ids:
            raise ConnectionError("store timeout")
        return await super().remove_post_if_not_removed(post_id, reason=reason, now=now)


@dataclass
class MutedStore(InMemoryModerationStore):
    async def create_notification(self, notification: Notification):
        raise RuntimeError("notifications unavailable")


def _of_type(store: InMemoryModerationStore, kind: NotificationType) -> list[Notification]:
    return [item for item in store.notifications.values() if item.type is kind]


async def _report(runtime, post_id: str, *, category: str = "spam", reporter: str = "reader") -> None:
    await runtime.orchestrator.submit_report(
        reporter_id=reporter,
        reported_user_id="owner",
        post_id=post_id,
        category=category,
    )


@pytest.mark.asyncio
async def test_urgent_review_notice_once_per_staff(runtime, store, make_user, make_post) -> None:
    await make_user("owner")
    await make_post("post-1", "owner", report_count=8)

    await _report(runtime, "post-1", reporter="r1")
    assert _of_type(store, NotificationType.URGENT_REVIEW) == []

    await _report(runtime, "post-1", reporter="r2")
    await _report(runtime, "post-1", reporter="r3")

    notices = _of_type(store, NotificationType.URGENT_REVIEW)
    assert sorted(item.user_id for item in notices) == ["admin-1", "admin-2"]
    assert {item.dedupe_key for item in notices} == {
        urgent_review_dedupe_key("post-1", "admin-1"),
        urgent_review_dedupe_key("post-1", "admin-2"),
    }
    info = await runtime.reports.post_moderation("post-1")
    assert info.severity_level is AggregateSeverity.URGENT


@pytest.mark.asyncio
async def test_warning_at_threshold_recommends_but_does_not_ban(runtime, store, make_post) -> None:
    await store.create_user(User(id="owner", warning_count=4, push_token="token-abcdef-123456"))
    await make_post("post-1", "owner")
    await _report(runtime, "post-1")

    outcome = await runtime.orchestrator.warn_user("owner", admin_id="admin-1", post_id="post-1")

    assert outcome.user.warning_count == 5
    assert outcome.user.status is UserStatus.WARNING
    assert outcome.ban_recommended is True
    assert outcome.notification_id in store.notifications
    assert (await store.get_post("post-1")).is_warned is True
    assert all(report.status is ReportStatus.RESOLVED for report in store.reports.values())
    assert len(outcome.resolution.resolved_report_ids) == 1


@pytest.mark.asyncio
async def test_suspend_uses_configured_duration(runtime, store, make_user) -> None:
    await make_user("owner")

    outcome = await runtime.orchestrator.suspend_user("owner", reason="spam", admin_id="admin-1")

    user = outcome.user
    assert user.status is UserStatus.SUSPENDED
    assert user.suspend_count == 1
    assert user.suspend_expires_at - user.suspended_at == timedelta(days=30)
    notice = store.notifications[outcome.notification_id]
    assert notice.title == "Temporary Account Restriction - 30 days"


@pytest.mark.asyncio
async def test_ban_is_permanent_by_default(runtime, store, make_user, make_post) -> None:
    await make_user("owner")
    await make_post("post-1", "owner")
    await _report(runtime, "post-1")

    outcome = await runtime.orchestrator.ban_user("owner", reason="repeat offences", admin_id="admin-1")

    assert outcome.user.status is UserStatus.BANNED
    assert outcome.user.ban_expires_at is None
    assert store.notifications[outcome.notification_id].title == PERMANENT_BAN_TITLE
    assert all(report.status is ReportStatus.RESOLVED for report in store.reports.values())

    timed = await runtime.orchestrator.ban_user("owner", reason="again", duration_days=3)
    assert timed.user.ban_expires_at - timed.user.banned_at == timedelta(days=3)


@pytest.mark.asyncio
async def test_ban_with_failed_resolution_chunk_keeps_sanction(push) -> None:
    store = FailingChunkStore()
    runtime = build_runtime(push=push, store=store, staff_ids=())
    await store.create_user(User(id="owner", push_token="token-abcdef-123456"))
    for index in range(15):
        await store.create_post(Post(id=f"p{index:02d}", user_id="owner"))
    for index in range(25):
        await _report(runtime, f"p{index % 15:02d}", reporter=f"r{index}")

    with pytest.raises(PartialBatchError) as excinfo:
        await runtime.orchestrator.ban_user("owner", reason="spam ring")

    outcome = excinfo.value.outcome
    assert isinstance(outcome, SanctionOutcome)
    assert outcome.user.status is UserStatus.BANNED
    assert outcome.notification_id in store.notifications
    assert excinfo.value.failed_post_ids == ("p10", "p11", "p12", "p13", "p14")
    assert len(outcome.resolution.resolved_report_ids) == 20
    assert (await store.get_user("owner")).status is UserStatus.BANNED


@pytest.mark.asyncio
async def test_sanction_notice_failure_still_resolves_reports(push) -> None:
    store = MutedStore()
    runtime = build_runtime(push=push, store=store, staff_ids=())
    await store.create_user(User(id="owner"))
    await store.create_post(Post(id="post-1", user_id="owner"))
    await _report(runtime, "post-1")

    with pytest.raises(StepFailedError) as excinfo:
        await runtime.orchestrator.suspend_user("owner", reason="spam", duration_days=2)

    assert excinfo.value.step == "notify"
    assert excinfo.value.completed_steps == ("sanction", "resolve")
    outcome = excinfo.value.outcome
    assert isinstance(outcome, SanctionOutcome)
    assert outcome.failed_step == "notify"
    assert outcome.notification_id is None
    assert len(outcome.resolution.resolved_report_ids) == 1
    user = await store.get_user("owner")
    assert user.status is UserStatus.SUSPENDED
    assert user.suspend_count == 1
    assert all(report.status is ReportStatus.RESOLVED for report in store.reports.values())


@pytest.mark.asyncio
async def test_announcement_decisions_notify_creator(runtime, store, make_user) -> None:
    await make_user("club-1")
    start = datetime.now(timezone.utc) + timedelta(hours=2)
    item = await runtime.announcements.submit(
        title="Open day",
        start_date=start,
        end_date=start + timedelta(days=1),
        created_by="club-1",
    )

    approved = await runtime.orchestrator.approve_announcement(item.id, admin_id="admin-1")

    assert approved.status is AnnouncementStatus.SCHEDULED
    notices = _of_type(store, NotificationType.ANNOUNCEMENT)
    assert [notice.user_id for notice in notices] == ["club-1"]
    assert notices[0].data["status"] == "scheduled"


@pytest.mark.asyncio
async def test_urgent_items_lists_posts_and_imminent_announcements(runtime, store, make_user, make_post) -> None:
    await make_user("owner")
    await make_post("hot", "owner", report_count=12)
    await make_post("calm", "owner", report_count=3)
    now = datetime.now(timezone.utc)
    soon = await runtime.announcements.submit(
        title="Soon", start_date=now + timedelta(hours=10), end_date=now + timedelta(days=2)
    )
    await runtime.announcements.submit(
        title="Later", start_date=now + timedelta(days=5), end_date=now + timedelta(days=6)
    )

    items = await runtime.orchestrator.list_urgent_items(now=now)

    assert [post.id for post in items.posts] == ["hot"]
    assert [item.id for item in items.announcements] == [soon.id]
    assert items.total == 2


@pytest.mark.asyncio
async def test_configuration_update_applies_to_rules(runtime) -> None:
    actor = ConfigurationActor(admin_id="admin-1")
    await runtime.orchestrator.update_configuration(
        {"report_thresholds": {"normal": 1, "warning": 2, "urgent": 3}},
        actor,
    )

    assert runtime.rules.aggregate_severity(3) is AggregateSeverity.URGENT
    logs = await runtime.orchestrator.list_configuration_logs(limit=10)
    assert sorted(entry.field for entry in logs) == [
        "report_thresholds.normal",
        "report_thresholds.urgent",
        "report_thresholds.warning",
    ]


@pytest.mark.asyncio
async def test_report_handler_failure_propagates_and_reconciliation_recovers(push) -> None:
    store = StuckRemovalStore(stuck_post_ids={"post-1", "post-2"})
    runtime = build_runtime(push=push, store=store, staff_ids=())
    await store.create_user(User(id="owner"))
    await store.create_post(Post(id="post-1", user_id="owner"))
    await store.create_post(Post(id="post-2", user_id="owner"))
    first = await runtime.orchestrator.submit_report(
        reporter_id="reader", reported_user_id="owner", post_id="post-1", category="scam"
    )
    second = await runtime.orchestrator.submit_report(
        reporter_id="reader", reported_user_id="owner", post_id="post-2", category="nudity"
    )

    with pytest.raises(StepFailedError) as excinfo:
        await runtime.orchestrator.handle_report_created(first)
    assert excinfo.value.step == "post"

    later = datetime.now(timezone.utc) + timedelta(minutes=10)
    store.stuck_post_ids = {"post-1"}
    assert await runtime.orchestrator.reconcile_pending_reports(now=later) == [second.id]
    assert store.reports[first.id].status is ReportStatus.PENDING

    store.stuck_post_ids = set()
    assert await runtime.orchestrator.reconcile_pending_reports(now=later) == [first.id]
    assert store.reports[first.id].status is ReportStatus.RESOLVED
    assert store.reports[first.id].auto_removed is True
    assert await runtime.orchestrator.reconcile_pending_reports(now=later) == []


@pytest.mark.asyncio
async def test_reconciliation_waits_for_grace_period(push) -> None:
    store = StuckRemovalStore(stuck_post_ids={"post-1"})
    runtime = build_runtime(push=push, store=store, staff_ids=())
    await store.create_user(User(id="owner"))
    await store.create_post(Post(id="post-1", user_id="owner"))
    await runtime.orchestrator.submit_report(
        reporter_id="reader", reported_user_id="owner", post_id="post-1", category="scam"
    )
    store.stuck_post_ids = set()

    assert await runtime.orchestrator.reconcile_pending_reports(grace=timedelta(minutes=5)) == []
