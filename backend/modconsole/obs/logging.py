"""Structured JSON logging with per-request context for the moderation engine."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from modconsole.settings import settings

_LOGGER_NAME = "modconsole"

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"request_id": ContextVar("mod_request_id", default=None),
	"actor_id": ContextVar("mod_actor_id", default=None),
	"operation": ContextVar("mod_operation", default=None),
}

# push tokens and FCM credentials never reach the log stream
_REDACTED_KEYWORDS = ("token", "secret", "authorization", "password", "credential")
_MASKED_KEYWORDS = ("email",)

# periodic sweeps log every tick; sampling applies to these loggers only
_SAMPLED_PREFIXES = ("modconsole.moderation.jobs", "modconsole.moderation.workers")

_MAX_STRING_LENGTH = 256
_MAX_ITEMS = 20

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind request_id / actor_id / operation for the current task; returns reset tokens."""
	tokens: Dict[str, Token] = {}
	for key, value in fields.items():
		var = _CONTEXT.get(key)
		if var is None:
			raise KeyError(f"unknown log context field: {key}")
		if value is not None:
			tokens[key] = var.set(value)
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for key, token in tokens.items():
		_CONTEXT[key].reset(token)


def current_context() -> Dict[str, str]:
	return {key: value for key, var in _CONTEXT.items() if (value := var.get())}


def mask_email(value: str) -> str:
	local, sep, domain = value.partition("@")
	if not sep:
		return "[masked]"
	return f"{local[:1]}***@{domain}"


def _clip(value: Any) -> Any:
	if isinstance(value, str) and len(value) > _MAX_STRING_LENGTH:
		return value[:_MAX_STRING_LENGTH] + "..."
	if isinstance(value, dict):
		return {str(key): _scrub(str(key), nested) for key, nested in list(value.items())[:_MAX_ITEMS]}
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clip(item) for item in list(value)[:_MAX_ITEMS]]
		if len(value) > _MAX_ITEMS:
			items.append(f"+{len(value) - _MAX_ITEMS} more")
		return items
	if isinstance(value, datetime):
		return value.isoformat()
	return value


def _scrub(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(word in lowered for word in _REDACTED_KEYWORDS):
		return "[redacted]"
	if isinstance(value, str) and any(word in lowered for word in _MASKED_KEYWORDS):
		return mask_email(value)
	return _clip(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: base fields, bound context, then scrubbed extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(current_context())
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _RECORD_ATTRS or key in payload:
				continue
			payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class SweepSamplingFilter(logging.Filter):
	"""Sample info logs from sweep jobs and workers; everything else passes."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO or not record.name.startswith(_SAMPLED_PREFIXES):
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(SweepSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level.upper())
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
