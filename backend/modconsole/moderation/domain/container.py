"""Explicit wiring of the moderation engine.

``build_runtime`` instantiates every collaborator once and hands them to each other;
callers keep the returned runtime rather than reaching for module globals.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from modconsole.moderation.domain.announcements import AnnouncementLifecycleManager
from modconsole.moderation.domain.configuration import (
    ConfigurationCache,
    ConfigurationStore,
    InMemoryConfigurationStore,
)
from modconsole.moderation.domain.notifications import NotificationDispatcher, PushSender
from modconsole.moderation.domain.orchestrator import ModerationOrchestrator, StaffDirectory, StaticStaffDirectory
from modconsole.moderation.domain.reports import ReportLifecycleManager
from modconsole.moderation.domain.repository import InMemoryModerationStore, ModerationStore, ReportEventSource
from modconsole.moderation.domain.rules import BusinessRules
from modconsole.settings import Settings, settings as default_settings


@dataclass
class ModerationRuntime:
    settings: Settings
    config_store: ConfigurationStore
    cache: ConfigurationCache
    store: ModerationStore
    rules: BusinessRules
    dispatcher: NotificationDispatcher
    reports: ReportLifecycleManager
    announcements: AnnouncementLifecycleManager
    staff: StaffDirectory
    orchestrator: ModerationOrchestrator

    async def start(self) -> None:
        await self.orchestrator.start()

    async def stop(self) -> None:
        await self.orchestrator.stop()


def build_runtime(
    *,
    push: PushSender,
    store: Optional[ModerationStore] = None,
    config_store: Optional[ConfigurationStore] = None,
    staff: Optional[StaffDirectory] = None,
    staff_ids: Optional[Sequence[str]] = None,
    events: Optional[ReportEventSource] = None,
    app_settings: Optional[Settings] = None,
) -> ModerationRuntime:
    app_settings = app_settings or default_settings
    store = store or InMemoryModerationStore()
    config_store = config_store or InMemoryConfigurationStore()
    if staff is None:
        ids = staff_ids if staff_ids is not None else app_settings.moderation_staff_ids
        staff = StaticStaffDirectory(staff_ids=tuple(ids))

    cache = ConfigurationCache(config_store)
    rules = BusinessRules(cache)
    dispatcher = NotificationDispatcher(
        store=store,
        push=push,
        body_max_chars=app_settings.push_body_max_chars,
        push_timeout_seconds=app_settings.push_timeout_seconds,
        max_attempts=app_settings.push_max_attempts,
        redelivery_window_hours=app_settings.push_redelivery_window_hours,
    )
    reports = ReportLifecycleManager(
        store=store,
        rules=rules,
        dispatcher=dispatcher,
        chunk_size=app_settings.report_resolution_chunk_size,
    )
    announcements = AnnouncementLifecycleManager(store=store)
    orchestrator = ModerationOrchestrator(
        cache=cache,
        store=store,
        rules=rules,
        reports=reports,
        announcements=announcements,
        dispatcher=dispatcher,
        staff=staff,
        events=events,
    )
    return ModerationRuntime(
        settings=app_settings,
        config_store=config_store,
        cache=cache,
        store=store,
        rules=rules,
        dispatcher=dispatcher,
        reports=reports,
        announcements=announcements,
        staff=staff,
        orchestrator=orchestrator,
    )


__all__ = ["ModerationRuntime", "build_runtime"]
