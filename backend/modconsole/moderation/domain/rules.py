"""Business rules evaluated against the current configuration snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from modconsole.moderation.domain import severity
from modconsole.moderation.domain.configuration import ConfigurationCache
from modconsole.moderation.domain.models import (
    AggregateSeverity,
    Configuration,
    Post,
    PostModerationInfo,
    SeverityTier,
)


@dataclass(slots=True)
class PostCreationCheck:
    allowed: bool
    remaining_free_posts: int
    reason: str | None = None


class BusinessRules:
    """Pure rule helpers; instantiated once at startup and passed to consumers."""

    def __init__(self, cache: ConfigurationCache) -> None:
        self._cache = cache

    @property
    def config(self) -> Configuration:
        return self._cache.current()

    def classify(self, category: object) -> SeverityTier:
        return severity.classify(category)

    def aggregate_severity(self, report_count: int) -> AggregateSeverity:
        return severity.aggregate_severity(report_count, self.config.report_thresholds)

    def post_moderation(self, report_count: int) -> PostModerationInfo:
        level = self.aggregate_severity(report_count)
        return PostModerationInfo(
            severity_level=level,
            requires_urgent_review=level is AggregateSeverity.URGENT,
            should_notify_admin=level is not AggregateSeverity.NORMAL,
        )

    def post_moderation_for(self, post: Post) -> PostModerationInfo:
        return self.post_moderation(post.report_count)

    def calculate_post_expiration(self, created_at: datetime) -> datetime:
        return created_at + timedelta(hours=self.config.post_visibility_duration_hours)

    def is_post_expired(self, created_at: datetime, *, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.calculate_post_expiration(created_at)

    def validate_post_creation(self, daily_post_count: int, *, is_announcement: bool = False) -> PostCreationCheck:
        limit = self.config.daily_free_post_limit
        if is_announcement:
            return PostCreationCheck(allowed=True, remaining_free_posts=max(0, limit - daily_post_count))
        if daily_post_count >= limit:
            return PostCreationCheck(
                allowed=False,
                remaining_free_posts=0,
                reason=f"Daily free post limit of {limit} reached",
            )
        return PostCreationCheck(allowed=True, remaining_free_posts=limit - daily_post_count)

    def emoji_pin_price(self) -> float:
        return self.config.emoji_pin_price

    def ban_recommended(self, warning_count: int) -> bool:
        return warning_count >= self.config.ban_threshold


__all__ = ["BusinessRules", "PostCreationCheck"]
