"""Catch-up pass for high severity reports whose report-created event was lost or kept failing."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List

from modconsole.moderation.domain.orchestrator import ModerationOrchestrator
from modconsole.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

JOB_NAME = "report_reconciliation"


async def run(
    orchestrator: ModerationOrchestrator,
    *,
    grace: timedelta = timedelta(minutes=5),
    now: datetime | None = None,
) -> List[str]:
    now = now or datetime.now(timezone.utc)
    started = time.perf_counter()
    try:
        processed = await orchestrator.reconcile_pending_reports(now=now, grace=grace)
    except Exception:  # noqa: BLE001 - retried on the next tick
        obs_metrics.record_job_run(JOB_NAME, result="error", duration_seconds=time.perf_counter() - started)
        logger.exception("report reconciliation failed")
        return []
    obs_metrics.record_job_run(JOB_NAME, result="ok", duration_seconds=time.perf_counter() - started)
    return processed
