"""JSON log lines with request and socket context attached."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from campusquest.settings import settings

_LOGGER_NAME = "campusquest"

# Order here is the order fields appear in each line.
_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"request_id": ContextVar("obs_request_id", default=None),
	"route": ContextVar("obs_route", default=None),
	"user_id": ContextVar("obs_user_id", default=None),
	"connection_id": ContextVar("obs_connection_id", default=None),
}

# Positions and chat bodies are personal data; credentials are secrets.
_REDACTED_FIELDS = frozenset({"lat", "lon", "lng", "latitude", "longitude", "text", "token", "authorization"})
_REDACTED_SUFFIXES = ("_token", "_secret", "password")

_MAX_STRING = 256
_MAX_ITEMS = 10

# Attributes every LogRecord carries; anything else came in via `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def bind_context(
	*,
	request_id: Optional[str] = None,
	route: Optional[str] = None,
	user_id: Optional[str] = None,
	connection_id: Optional[str] = None,
) -> Dict[str, Token]:
	"""Bind fields for the current request or socket event; pass the result to `reset_context`."""
	values = {
		"request_id": request_id,
		"route": route,
		"user_id": user_id,
		"connection_id": connection_id,
	}
	return {key: _CONTEXT[key].set(value) for key, value in values.items() if value is not None}


def reset_context(tokens: Dict[str, Token]) -> None:
	for key, token in tokens.items():
		_CONTEXT[key].reset(token)


def get_request_id(default: str = "unknown") -> str:
	return _CONTEXT["request_id"].get() or default


def _is_redacted(key: str) -> bool:
	lowered = key.lower()
	return lowered in _REDACTED_FIELDS or lowered.endswith(_REDACTED_SUFFIXES)


def _scrub(key: str, value: Any) -> Any:
	if _is_redacted(key):
		return "[redacted]"
	if value is None or isinstance(value, (bool, int, float)):
		return value
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING else value[:_MAX_STRING] + "..."
	if isinstance(value, dict):
		items = list(value.items())
		scrubbed = {str(k): _scrub(str(k), v) for k, v in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			scrubbed["..."] = f"+{len(items) - _MAX_ITEMS} keys"
		return scrubbed
	if isinstance(value, (list, tuple, set, frozenset)):
		items = list(value)
		scrubbed_items = [_scrub("", item) for item in items[:_MAX_ITEMS]]
		if len(items) > _MAX_ITEMS:
			scrubbed_items.append("...")
		return scrubbed_items
	return str(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per record, with bound context and `extra=` fields."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for key, var in _CONTEXT.items():
			value = var.get()
			if value:
				payload[key] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in vars(record).items():
			if key not in _RECORD_ATTRS and key not in payload:
				payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of INFO records; position traffic is chatty."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = min(1.0, max(0.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
