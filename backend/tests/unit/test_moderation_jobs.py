from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from prometheus_client import REGISTRY

from modconsole.moderation.domain.container import build_runtime
from modconsole.moderation.domain.errors import PushDeliveryError, TransientStoreError
from modconsole.moderation.domain.models import (
    Announcement,
    AnnouncementStatus,
    NotificationType,
    Post,
    PostStatus,
    Report,
    ReportStatus,
    User,
)
from modconsole.moderation.domain.repository import InMemoryModerationStore
from modconsole.moderation.infra.scheduler import ModerationScheduler
from modconsole.moderation.jobs import announcement_sweeps, notification_redelivery, report_reconciliation
from modconsole.moderation.workers.runner import schedule_jobs


def _job_runs(name: str, result: str) -> float:
    return REGISTRY.get_sample_value("mod_jobs_runs_total", {"name": name, "result": result}) or 0.0


@dataclass
class BrokenSweepStore(InMemoryModerationStore):
    async def list_announcements_due(self, status, *, due_field, now) -> List[Announcement]:
        raise ConnectionError("store offline")


def test_schedule_jobs_registers_every_sweep(runtime) -> None:
    scheduler = schedule_jobs(runtime, ModerationScheduler())
    assert sorted(scheduler.job_ids()) == sorted(
        [
            announcement_sweeps.ACTIVATION_JOB,
            announcement_sweeps.EXPIRY_JOB,
            notification_redelivery.JOB_NAME,
            report_reconciliation.JOB_NAME,
        ]
    )
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_sweep_jobs_move_announcements(runtime, store) -> None:
    now = datetime.now(timezone.utc)
    item = await runtime.announcements.submit(
        title="Blood drive",
        start_date=now - timedelta(hours=1),
        end_date=now + timedelta(hours=1),
    )
    await runtime.announcements.approve(item.id)

    assert await announcement_sweeps.run_expiry(runtime.orchestrator, now=now) == []
    assert await announcement_sweeps.run_activation(runtime.orchestrator, now=now) == [item.id]
    assert await announcement_sweeps.run_expiry(runtime.orchestrator, now=now + timedelta(hours=2)) == [item.id]
    assert store.announcements[item.id].status is AnnouncementStatus.EXPIRED


@pytest.mark.asyncio
async def test_sweep_job_records_error_when_store_fails(push) -> None:
    runtime = build_runtime(push=push, store=BrokenSweepStore(), staff_ids=())
    errors_before = _job_runs(announcement_sweeps.ACTIVATION_JOB, "error")
    ok_before = _job_runs(announcement_sweeps.ACTIVATION_JOB, "ok")

    assert await announcement_sweeps.run_activation(runtime.orchestrator) == []

    assert _job_runs(announcement_sweeps.ACTIVATION_JOB, "error") == errors_before + 1
    assert _job_runs(announcement_sweeps.ACTIVATION_JOB, "ok") == ok_before
    with pytest.raises(TransientStoreError):
        await runtime.orchestrator.sweep_announcement_expiry()


@pytest.mark.asyncio
async def test_redelivery_job_retries_transient_failures(runtime, push, make_user) -> None:
    await make_user("u1")
    push.failures.append(PushDeliveryError("UNAVAILABLE"))
    notification_id = await runtime.dispatcher.dispatch("u1", NotificationType.INFO, "Hi", "There")

    assert await notification_redelivery.run(runtime.orchestrator) == [notification_id]
    assert len(push.sent) == 1


@pytest.mark.asyncio
async def test_reconciliation_job_processes_stalled_high_severity_reports(push) -> None:
    store = InMemoryModerationStore()
    runtime = build_runtime(push=push, store=store, staff_ids=())
    now = datetime.now(timezone.utc)
    await store.create_user(User(id="owner", push_token="token-abcdef-123456"))
    await store.create_post(Post(id="post-1", user_id="owner"))
    await store.create_post(Post(id="post-2", user_id="owner"))
    # written without a subscriber, as if the report-created event never arrived
    await store.create_report(
        Report(
            id="stale",
            reporter_id="a",
            reported_user_id="owner",
            post_id="post-1",
            category="hate_speech",
            created_at=now - timedelta(minutes=30),
        )
    )
    await store.create_report(
        Report(
            id="fresh",
            reporter_id="b",
            reported_user_id="owner",
            post_id="post-2",
            category="nudity",
            created_at=now,
        )
    )
    await store.create_report(
        Report(
            id="low",
            reporter_id="c",
            reported_user_id="owner",
            post_id="post-2",
            category="spam",
            created_at=now - timedelta(hours=2),
        )
    )
    ok_before = _job_runs(report_reconciliation.JOB_NAME, "ok")

    processed = await report_reconciliation.run(runtime.orchestrator, grace=timedelta(minutes=5), now=now)

    assert processed == ["stale"]
    assert _job_runs(report_reconciliation.JOB_NAME, "ok") == ok_before + 1
    assert store.posts["post-1"].status is PostStatus.REMOVED
    assert store.reports["stale"].status is ReportStatus.RESOLVED
    assert store.reports["stale"].auto_removed is True
    assert store.reports["fresh"].status is ReportStatus.PENDING
    assert store.reports["low"].status is ReportStatus.PENDING
    assert [item.related_post_id for item in store.notifications.values()] == ["post-1"]

    assert await report_reconciliation.run(runtime.orchestrator, now=now) == []
