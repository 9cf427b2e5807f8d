"""Central registry for Prometheus metrics used by the moderation engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


MOD_REPORTS_TOTAL = Counter(
	"mod_reports_total",
	"Moderation reports processed",
	["severity"],
)

MOD_AUTO_REMOVALS_TOTAL = Counter(
	"mod_auto_removals_total",
	"Posts auto-removed by high severity reports",
	["category"],
)

MOD_REPORT_STATUS_UPDATES_TOTAL = Counter(
	"mod_report_status_updates_total",
	"Admin driven report status changes",
	["status"],
)

MOD_RESOLUTION_CHUNKS_TOTAL = Counter(
	"mod_report_resolution_chunks_total",
	"Chunked report resolution batches",
	["result"],
)

MOD_ANNOUNCEMENT_TRANSITIONS_TOTAL = Counter(
	"mod_announcement_transitions_total",
	"Announcement lifecycle transitions",
	["transition"],
)

MOD_SANCTIONS_TOTAL = Counter(
	"mod_sanctions_total",
	"User sanctions applied",
	["action", "result"],
)

MOD_NOTIFICATIONS_TOTAL = Counter(
	"mod_notifications_total",
	"Notification records persisted",
	["type", "result"],
)

MOD_PUSH_DELIVERIES_TOTAL = Counter(
	"mod_push_deliveries_total",
	"Push delivery attempts",
	["result"],
)

MOD_PUSH_TOKENS_INVALIDATED_TOTAL = Counter(
	"mod_push_tokens_invalidated_total",
	"Push tokens removed after permanent delivery failures",
)

MOD_PUSH_LATENCY_SECONDS = Histogram(
	"mod_push_latency_seconds",
	"Push transport latency",
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

MOD_CONFIG_UPDATES_TOTAL = Counter(
	"mod_configuration_updates_total",
	"Configuration update attempts",
	["result"],
)

BACKGROUND_RUNS = Counter(
	"mod_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"mod_jobs_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0, 60.0),
)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)


def inc_announcement_transition(transition: str, count: int = 1) -> None:
	if count > 0:
		MOD_ANNOUNCEMENT_TRANSITIONS_TOTAL.labels(transition=transition).inc(count)


def notification_persisted(type: str, result: str) -> None:  # noqa: A002 - mirrors notification field
	MOD_NOTIFICATIONS_TOTAL.labels(type=type, result=result).inc()


def push_delivery(result: str) -> None:
	MOD_PUSH_DELIVERIES_TOTAL.labels(result=result).inc()
