"""Report-created events read from a Redis stream."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Protocol

from modconsole.moderation.domain.repository import ModerationStore, ReportCreatedHandler, Unsubscribe

logger = logging.getLogger(__name__)


class RedisStream(Protocol):
    async def xread(
        self,
        streams: Mapping[str, str],
        count: int,
        block: int,
    ) -> list[tuple[str, list[tuple[str, Mapping[Any, Any]]]]]:
        ...


@dataclass
class ReportEventsWorker:
    """Consumes report-created events and hands the stored report to ``handler``.

    ``last_id`` only moves past an entry once its handler succeeded. A failing entry stops
    the batch and is read again on the next pass; after ``max_attempts`` it is skipped and
    left to the pending-report reconciliation job.
    """

    redis: RedisStream
    store: ModerationStore
    handler: ReportCreatedHandler
    stream_key: str = "mod:reports"
    batch_size: int = 100
    block_ms: int = 5000
    last_id: str = "0-0"
    max_attempts: int = 5
    _attempts: Dict[str, int] = field(default_factory=dict)

    async def run_once(self) -> int:
        messages = await self.redis.xread({self.stream_key: self.last_id}, count=self.batch_size, block=self.block_ms)
        if not messages:
            return 0
        handled = 0
        for _stream, entries in messages:
            for entry_id, payload in entries:
                event = _decode(payload)
                try:
                    processed = await self._process_event(entry_id, event)
                except Exception:  # noqa: BLE001 - retried from last_id
                    attempts = self._attempts.get(entry_id, 0) + 1
                    if attempts < self.max_attempts:
                        self._attempts[entry_id] = attempts
                        logger.warning(
                            "report event failed",
                            extra={"entry_id": entry_id, "attempt": attempts},
                            exc_info=True,
                        )
                        return handled
                    logger.error(
                        "report event skipped after repeated failures",
                        extra={"entry_id": entry_id, "attempts": attempts, "report_id": event.get("report_id")},
                        exc_info=True,
                    )
                    processed = False
                if processed:
                    handled += 1
                self._attempts.pop(entry_id, None)
                self.last_id = entry_id
        return handled

    async def _process_event(self, entry_id: str, event: Mapping[str, Any]) -> bool:
        report_id = str(event.get("report_id", ""))
        if not report_id:
            logger.warning("report event without report_id", extra={"entry_id": entry_id})
            return False
        report = await self.store.get_report(report_id)
        if report is None:
            logger.warning("report event for unknown report", extra={"report_id": report_id})
            return False
        await self.handler(report)
        return True


async def _run_forever(worker: ReportEventsWorker, delay: float) -> None:
    while True:
        try:
            await worker.run_once()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - unread entries are retried from last_id
            logger.exception("report events worker iteration failed")
        await asyncio.sleep(delay)


class RedisReportEventSource:
    """Event source backed by the report stream; each subscription runs one worker task."""

    def __init__(
        self,
        redis: RedisStream,
        store: ModerationStore,
        *,
        stream_key: str = "mod:reports",
        poll_interval: float = 0.1,
    ) -> None:
        self._redis = redis
        self._store = store
        self._stream_key = stream_key
        self._poll_interval = poll_interval

    async def subscribe_report_created(self, handler: ReportCreatedHandler) -> Unsubscribe:
        worker = ReportEventsWorker(
            redis=self._redis,
            store=self._store,
            handler=handler,
            stream_key=self._stream_key,
        )
        task = asyncio.create_task(_run_forever(worker, self._poll_interval), name="moderation-report-events")

        async def _unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return _unsubscribe


def _decode(payload: Mapping[Any, Any]) -> Mapping[str, Any]:
    result: dict[str, Any] = {}
    for key, value in payload.items():
        decoded_key = key.decode("utf-8") if isinstance(key, (bytes, bytearray)) else str(key)
        decoded_value: Any
        if isinstance(value, (bytes, bytearray)):
            decoded_value = value.decode("utf-8")
        else:
            decoded_value = value
        result[decoded_key] = decoded_value
    return result


__all__ = ["RedisReportEventSource", "ReportEventsWorker"]
