"""Configuration store backed by Postgres with change events on a Redis stream."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import asyncpg
from redis.asyncio import Redis

from modconsole.infra.redis import RedisProxy
from modconsole.moderation.domain.configuration import (
    ConfigListener,
    ConfigurationActor,
    ErrorListener,
    Unsubscribe,
    apply_update,
)
from modconsole.moderation.domain.errors import TransientStoreError
from modconsole.moderation.domain.models import Configuration, ConfigurationChangeLog

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


def _document(config: Configuration) -> dict[str, Any]:
    data = config.as_dict()
    data.pop("last_updated", None)
    data.pop("updated_by", None)
    return data


class PostgresConfigurationStore:
    """Single-row configuration table; last writer wins."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        redis: Redis | RedisProxy,
        *,
        stream_key: str = "mod:configuration",
        block_ms: int = 5000,
    ) -> None:
        self.pool = pool
        self.redis = redis
        self.stream_key = stream_key
        self.block_ms = block_ms

    async def get(self) -> Configuration:
        try:
            async with self.pool.acquire() as conn:
                record = await conn.fetchrow("SELECT data, last_updated, updated_by FROM configuration WHERE id = 1")
                if record is None:
                    await conn.execute(
                        "INSERT INTO configuration (id, data) VALUES (1, $1::jsonb) ON CONFLICT (id) DO NOTHING",
                        _document(Configuration()),
                    )
                    record = await conn.fetchrow("SELECT data, last_updated, updated_by FROM configuration WHERE id = 1")
        except _TRANSIENT_ERRORS as exc:
            raise TransientStoreError(str(exc) or "store_unavailable") from exc
        if record is None:
            raise TransientStoreError("configuration_row_missing")
        data = dict(record["data"] or {})
        data["last_updated"] = record["last_updated"]
        data["updated_by"] = record["updated_by"]
        return Configuration.from_dict(data)

    async def update(self, changes: Mapping[str, Any], actor: ConfigurationActor) -> Configuration:
        current = await self.get()
        updated, logs = apply_update(current, changes, actor, now=datetime.now(timezone.utc))
        if not logs:
            return current
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "UPDATE configuration SET data = $1::jsonb, last_updated = $2, updated_by = $3 WHERE id = 1",
                        _document(updated),
                        updated.last_updated,
                        updated.updated_by,
                    )
                    await conn.executemany(
                        """
                        INSERT INTO configuration_logs
                            (change_set_id, field, old_value, new_value, admin_id, admin_email, created_at)
                        VALUES ($1, $2, $3::jsonb, $4::jsonb, $5, $6, $7)
                        """,
                        [
                            (
                                entry.change_set_id,
                                entry.field,
                                entry.old_value,
                                entry.new_value,
                                entry.admin_id,
                                entry.admin_email,
                                entry.timestamp,
                            )
                            for entry in logs
                        ],
                    )
        except _TRANSIENT_ERRORS as exc:
            raise TransientStoreError(str(exc) or "store_unavailable") from exc
        try:
            await self.redis.xadd(self.stream_key, {"updated_by": actor.admin_id, "change_set_id": logs[0].change_set_id})
        except Exception:  # noqa: BLE001 - subscribers converge on their next refresh
            logger.exception("failed to publish configuration change")
        return updated

    async def list_logs(self, *, limit: int = 50) -> Sequence[ConfigurationChangeLog]:
        query = """
        SELECT change_set_id, field, old_value, new_value, admin_id, admin_email, created_at
        FROM configuration_logs
        ORDER BY created_at DESC, id DESC
        LIMIT $1
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, limit)
        except _TRANSIENT_ERRORS as exc:
            raise TransientStoreError(str(exc) or "store_unavailable") from exc
        return [
            ConfigurationChangeLog(
                change_set_id=row["change_set_id"],
                field=row["field"],
                old_value=row["old_value"],
                new_value=row["new_value"],
                admin_id=row["admin_id"],
                admin_email=row["admin_email"],
                timestamp=row["created_at"],
            )
            for row in rows
        ]

    async def subscribe(self, on_change: ConfigListener, on_error: ErrorListener) -> Unsubscribe:
        # read the stream tail before the snapshot so no change lands between the two
        last_id = await self._tail_id()
        on_change(await self.get())
        task = asyncio.create_task(self._follow(on_change, on_error, last_id), name="moderation-configuration")

        async def _unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return _unsubscribe

    async def _tail_id(self) -> str:
        try:
            entries = await self.redis.xrevrange(self.stream_key, count=1)
        except Exception as exc:  # noqa: BLE001
            raise TransientStoreError(f"configuration_stream_unavailable:{exc}") from exc
        if not entries:
            return "0-0"
        entry_id = entries[0][0]
        return entry_id.decode("utf-8") if isinstance(entry_id, (bytes, bytearray)) else str(entry_id)

    async def _follow(self, on_change: ConfigListener, on_error: ErrorListener, last_id: str) -> None:
        while True:
            try:
                messages = await self.redis.xread({self.stream_key: last_id}, count=10, block=self.block_ms)
                if not messages:
                    continue
                for _stream, entries in messages:
                    if entries:
                        last_id = entries[-1][0]
                on_change(await self.get())
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - keep following after transient failures
                on_error(exc)
                await asyncio.sleep(1.0)


__all__ = ["PostgresConfigurationStore"]
