"""Utilities for wiring moderation sweeps into the scheduler."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from modconsole.moderation.domain.container import ModerationRuntime
from modconsole.moderation.infra.scheduler import ModerationScheduler
from modconsole.moderation.jobs import announcement_sweeps, notification_redelivery, report_reconciliation


def schedule_jobs(runtime: ModerationRuntime, scheduler: Optional[ModerationScheduler] = None) -> ModerationScheduler:
    """Register the periodic sweeps on ``scheduler`` and return it (not started)."""

    scheduler = scheduler or ModerationScheduler()
    orchestrator = runtime.orchestrator
    cfg = runtime.settings

    async def _activation() -> None:
        await announcement_sweeps.run_activation(orchestrator)

    async def _expiry() -> None:
        await announcement_sweeps.run_expiry(orchestrator)

    async def _redelivery() -> None:
        await notification_redelivery.run(orchestrator)

    async def _reconciliation() -> None:
        await report_reconciliation.run(orchestrator, grace=timedelta(minutes=cfg.report_reconciliation_grace_minutes))

    scheduler.schedule_every(
        announcement_sweeps.ACTIVATION_JOB,
        _activation,
        minutes=cfg.announcement_activation_interval_minutes,
    )
    scheduler.schedule_every(
        announcement_sweeps.EXPIRY_JOB,
        _expiry,
        minutes=cfg.announcement_expiry_interval_minutes,
    )
    scheduler.schedule_every(
        notification_redelivery.JOB_NAME,
        _redelivery,
        minutes=cfg.notification_redelivery_interval_minutes,
    )
    scheduler.schedule_every(
        report_reconciliation.JOB_NAME,
        _reconciliation,
        minutes=cfg.report_reconciliation_interval_minutes,
    )
    return scheduler


__all__ = ["schedule_jobs"]
