"""Clock-driven announcement activation and expiry."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List

from modconsole.moderation.domain.orchestrator import ModerationOrchestrator
from modconsole.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

ACTIVATION_JOB = "announcement_activation"
EXPIRY_JOB = "announcement_expiry"


async def _timed(name: str, sweep: Callable[[], Awaitable[List[str]]]) -> List[str]:
    started = time.perf_counter()
    try:
        moved = await sweep()
    except Exception:  # noqa: BLE001 - retried on the next tick
        obs_metrics.record_job_run(name, result="error", duration_seconds=time.perf_counter() - started)
        logger.exception("announcement sweep job failed", extra={"job": name})
        return []
    obs_metrics.record_job_run(name, result="ok", duration_seconds=time.perf_counter() - started)
    return moved


async def run_activation(orchestrator: ModerationOrchestrator, *, now: datetime | None = None) -> List[str]:
    """Activate scheduled announcements whose start date has passed."""

    now = now or datetime.now(timezone.utc)
    return await _timed(ACTIVATION_JOB, lambda: orchestrator.sweep_announcement_activation(now=now))


async def run_expiry(orchestrator: ModerationOrchestrator, *, now: datetime | None = None) -> List[str]:
    """Expire active announcements whose end date has passed."""

    now = now or datetime.now(timezone.utc)
    return await _timed(EXPIRY_JOB, lambda: orchestrator.sweep_announcement_expiry(now=now))
