"""Second push attempt for notifications whose first delivery failed transiently."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import List

from modconsole.moderation.domain.orchestrator import ModerationOrchestrator
from modconsole.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

JOB_NAME = "notification_redelivery"


async def run(orchestrator: ModerationOrchestrator, *, now: datetime | None = None) -> List[str]:
    now = now or datetime.now(timezone.utc)
    started = time.perf_counter()
    try:
        delivered = await orchestrator.redeliver_notifications(now=now)
    except Exception:  # noqa: BLE001 - retried on the next tick
        obs_metrics.record_job_run(JOB_NAME, result="error", duration_seconds=time.perf_counter() - started)
        logger.exception("notification redelivery failed")
        return []
    obs_metrics.record_job_run(JOB_NAME, result="ok", duration_seconds=time.perf_counter() - started)
    return delivered
