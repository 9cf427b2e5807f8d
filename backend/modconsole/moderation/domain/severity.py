"""Report category severity mapping and count based urgency."""

from __future__ import annotations

from typing import Mapping

from modconsole.moderation.domain.models import AggregateSeverity, ReportThresholds, SeverityTier

_CATEGORY_TIERS: Mapping[str, SeverityTier] = {
    "threats_violence": SeverityTier.HIGH,
    "nudity": SeverityTier.HIGH,
    "inappropriate": SeverityTier.HIGH,
    "hate_speech": SeverityTier.HIGH,
    "scam": SeverityTier.HIGH,
    "harassment": SeverityTier.MEDIUM,
    "impersonation": SeverityTier.MEDIUM,
    "misinformation": SeverityTier.MEDIUM,
    "spam": SeverityTier.LOW,
}


def normalize_category(category: object) -> str:
    if category is None:
        return ""
    value = getattr(category, "value", category)
    return str(value).strip().lower()


def classify(category: object) -> SeverityTier:
    """Map a report category to its severity tier. Unknown categories are ``other``."""
    return _CATEGORY_TIERS.get(normalize_category(category), SeverityTier.OTHER)


def is_auto_removal_eligible(category: object) -> bool:
    return classify(category) is SeverityTier.HIGH


def categories_for(tier: SeverityTier) -> tuple[str, ...]:
    return tuple(sorted(name for name, value in _CATEGORY_TIERS.items() if value is tier))


def aggregate_severity(report_count: int, thresholds: ReportThresholds) -> AggregateSeverity:
    if report_count >= thresholds.urgent:
        return AggregateSeverity.URGENT
    if report_count >= thresholds.warning:
        return AggregateSeverity.WARNING
    return AggregateSeverity.NORMAL


__all__ = ["aggregate_severity", "categories_for", "classify", "is_auto_removal_eligible", "normalize_category"]
