"""Configuration port, validation, audited updates and the cached snapshot."""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from modconsole.moderation.domain.errors import ValidationError
from modconsole.moderation.domain.models import Configuration, ConfigurationChangeLog
from modconsole.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

ConfigListener = Callable[[Configuration], None]
ErrorListener = Callable[[Exception], None]
Unsubscribe = Callable[[], Awaitable[None]]

_THRESHOLD_KEYS = ("normal", "warning", "urgent")

# Allowed ranges for scalar fields; None means unbounded above.
_SCALAR_BOUNDS: Mapping[str, Tuple[float, Optional[float]]] = {
    "post_visibility_duration_hours": (1, 168),
    "daily_free_post_limit": (0, 20),
    "ban_threshold": (1, None),
    "ban_duration_days": (1, 365),
    "emoji_pin_price": (0.01, 99.99),
    "daily_free_coin": (0, None),
    "max_active_announcements": (1, None),
    "urgent_announcement_threshold_hours": (1, None),
}

_INTEGER_FIELDS = frozenset(
    {
        "post_visibility_duration_hours",
        "daily_free_post_limit",
        "ban_threshold",
        "ban_duration_days",
        "daily_free_coin",
        "max_active_announcements",
        "urgent_announcement_threshold_hours",
    }
)

UPDATABLE_FIELDS = frozenset(_SCALAR_BOUNDS) | {"report_thresholds"}


@dataclass(frozen=True)
class ConfigurationActor:
    admin_id: str
    email: Optional[str] = None


class ConfigurationStore(Protocol):
    async def get(self) -> Configuration:
        ...

    async def subscribe(self, on_change: ConfigListener, on_error: ErrorListener) -> Unsubscribe:
        ...

    async def update(self, changes: Mapping[str, Any], actor: ConfigurationActor) -> Configuration:
        ...

    async def list_logs(self, *, limit: int = 50) -> Sequence[ConfigurationChangeLog]:
        ...


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def merge_changes(current: Configuration, changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Overlay ``changes`` on the current values. Partial threshold maps merge key by key."""
    unknown = sorted(set(changes) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError("unknown_configuration_fields", errors=[f"unknown field: {name}" for name in unknown])
    merged = current.as_dict()
    for key, value in changes.items():
        if key == "report_thresholds":
            if not isinstance(value, Mapping):
                raise ValidationError("report_thresholds_must_be_object")
            extra = sorted(set(value) - set(_THRESHOLD_KEYS))
            if extra:
                raise ValidationError(
                    "unknown_threshold_keys",
                    errors=[f"unknown threshold: {name}" for name in extra],
                )
            thresholds = dict(merged["report_thresholds"])
            thresholds.update(value)
            merged["report_thresholds"] = thresholds
        else:
            merged[key] = value
    return merged


def validate_configuration(values: Mapping[str, Any]) -> List[str]:
    """Return human readable validation errors for a full configuration mapping."""
    errors: List[str] = []
    for name, (low, high) in _SCALAR_BOUNDS.items():
        value = values.get(name)
        if not _is_number(value):
            errors.append(f"{name} must be a number")
            continue
        if not math.isfinite(value):
            errors.append(f"{name} must be a finite number")
            continue
        if name in _INTEGER_FIELDS and float(value) != int(value):
            errors.append(f"{name} must be a whole number")
            continue
        if value < low or (high is not None and value > high):
            bound = f"between {low} and {high}" if high is not None else f"at least {low}"
            errors.append(f"{name} must be {bound}")

    thresholds = values.get("report_thresholds") or {}
    numeric = True
    for key in _THRESHOLD_KEYS:
        value = thresholds.get(key)
        if not _is_number(value):
            errors.append(f"report_thresholds.{key} must be a number")
            numeric = False
        elif not math.isfinite(value):
            errors.append(f"report_thresholds.{key} must be a finite number")
            numeric = False
        elif value < 1:
            errors.append(f"report_thresholds.{key} must be at least 1")
    if numeric:
        if thresholds["normal"] >= thresholds["warning"]:
            errors.append("report_thresholds.normal must be less than report_thresholds.warning")
        if thresholds["warning"] >= thresholds["urgent"]:
            errors.append("report_thresholds.warning must be less than report_thresholds.urgent")
    return errors


def _diff(old: Mapping[str, Any], new: Mapping[str, Any]) -> List[Tuple[str, Any, Any]]:
    changed: List[Tuple[str, Any, Any]] = []
    for name in sorted(UPDATABLE_FIELDS):
        if name == "report_thresholds":
            for key in _THRESHOLD_KEYS:
                before = old["report_thresholds"][key]
                after = new["report_thresholds"][key]
                if before != after:
                    changed.append((f"report_thresholds.{key}", before, after))
        elif old[name] != new[name]:
            changed.append((name, old[name], new[name]))
    return changed


def apply_update(
    current: Configuration,
    changes: Mapping[str, Any],
    actor: ConfigurationActor,
    *,
    now: datetime | None = None,
) -> Tuple[Configuration, List[ConfigurationChangeLog]]:
    """Validate and compute the next configuration plus one log entry per changed field.

    Returns the unchanged ``current`` and no logs when nothing differs.
    """
    merged = merge_changes(current, changes)
    errors = validate_configuration(merged)
    if errors:
        obs_metrics.MOD_CONFIG_UPDATES_TOTAL.labels(result="rejected").inc()
        raise ValidationError("invalid_configuration", errors=errors)
    changed = _diff(current.as_dict(), merged)
    if not changed:
        obs_metrics.MOD_CONFIG_UPDATES_TOTAL.labels(result="noop").inc()
        return current, []
    now = now or datetime.now(timezone.utc)
    merged["last_updated"] = now
    merged["updated_by"] = actor.admin_id
    change_set_id = uuid.uuid4().hex
    logs = [
        ConfigurationChangeLog(
            change_set_id=change_set_id,
            field=name,
            old_value=before,
            new_value=after,
            admin_id=actor.admin_id,
            admin_email=actor.email,
            timestamp=now,
        )
        for name, before, after in changed
    ]
    obs_metrics.MOD_CONFIG_UPDATES_TOTAL.labels(result="applied").inc()
    return Configuration.from_dict(merged), logs


class InMemoryConfigurationStore:
    """Process local store used by tests and single node development."""

    def __init__(self, initial: Configuration | None = None) -> None:
        self._config = initial
        self._logs: List[ConfigurationChangeLog] = []
        self._listeners: Dict[int, Tuple[ConfigListener, ErrorListener]] = {}
        self._next_listener = 0
        self._lock = asyncio.Lock()

    async def get(self) -> Configuration:
        async with self._lock:
            if self._config is None:
                self._config = Configuration()
            return self._config

    async def subscribe(self, on_change: ConfigListener, on_error: ErrorListener) -> Unsubscribe:
        listener_id = self._next_listener
        self._next_listener += 1
        self._listeners[listener_id] = (on_change, on_error)
        on_change(await self.get())

        async def _unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return _unsubscribe

    async def update(self, changes: Mapping[str, Any], actor: ConfigurationActor) -> Configuration:
        async with self._lock:
            current = self._config or Configuration()
            updated, logs = apply_update(current, changes, actor)
            if not logs:
                return current
            self._config = updated
            self._logs.extend(logs)
        self._publish(updated)
        return updated

    async def list_logs(self, *, limit: int = 50) -> Sequence[ConfigurationChangeLog]:
        return list(reversed(self._logs))[:limit]

    def _publish(self, config: Configuration) -> None:
        for on_change, on_error in list(self._listeners.values()):
            try:
                on_change(config)
            except Exception as exc:  # noqa: BLE001
                on_error(exc)


class ConfigurationCache:
    """Holds the latest configuration snapshot, refreshed through the store subscription.

    Consumers read ``current()`` on every evaluation and tolerate a slightly stale value.
    """

    def __init__(self, store: ConfigurationStore) -> None:
        self._store = store
        self._snapshot: Configuration | None = None
        self._unsubscribe: Unsubscribe | None = None

    @property
    def store(self) -> ConfigurationStore:
        return self._store

    def current(self) -> Configuration:
        return self._snapshot or Configuration()

    async def start(self) -> None:
        if self._unsubscribe is not None:
            return
        await self.refresh()
        self._unsubscribe = await self._store.subscribe(self._on_change, self._on_error)

    async def stop(self) -> None:
        if self._unsubscribe is None:
            return
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        await unsubscribe()

    async def refresh(self) -> Configuration:
        self._snapshot = await self._store.get()
        return self._snapshot

    def replace(self, config: Configuration) -> None:
        self._snapshot = config

    def _on_change(self, config: Configuration) -> None:
        self._snapshot = config
        logger.debug("configuration snapshot refreshed", extra={"updated_by": config.updated_by})

    def _on_error(self, exc: Exception) -> None:
        logger.warning("configuration subscription error", extra={"error": str(exc)})


__all__ = [
    "ConfigurationActor",
    "ConfigurationCache",
    "ConfigurationStore",
    "InMemoryConfigurationStore",
    "UPDATABLE_FIELDS",
    "apply_update",
    "merge_changes",
    "validate_configuration",
]
