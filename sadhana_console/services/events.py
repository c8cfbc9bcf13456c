"""Structured ``DB_QUERY``, ``MEDIA_OP`` and ``APP_EVENT`` log records.

Each event is one log line, ``[TYPE] message key=value ...``, with the same
fields attached to the record as ``event_fields`` for handlers that want
them unflattened.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("sadhana_console.events")

DB_QUERY = "DB_QUERY"
MEDIA_OP = "MEDIA_OP"
APP_EVENT = "APP_EVENT"

_MAX_VALUE_LENGTH = 200


def _clean_fields(fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    # Numbers and flags pass through; anything else is logged as trimmed text.
    cleaned: Dict[str, Any] = {}
    for key, value in (fields or {}).items():
        if not key or value is None:
            continue
        if not isinstance(value, (bool, int, float)):
            value = str(value).strip()
            if not value:
                continue
            if len(value) > _MAX_VALUE_LENGTH:
                value = value[:_MAX_VALUE_LENGTH] + "…"
        cleaned[str(key)] = value
    return cleaned


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    fields = {**_clean_fields(correlation), **_clean_fields(context), **_clean_fields(payload)}
    if duration_ms is not None:
        fields["duration_ms"] = round(float(duration_ms), 2)

    text = f"[{event_type}] {str(message).strip()}"
    if fields:
        text += " " + " ".join(f"{key}={value}" for key, value in fields.items())
    logger.log(level, text, extra={"event_type": event_type, "event_fields": fields})


def emit_db_event(action: str, *, level: int = logging.DEBUG, **kwargs: Any) -> None:
    """Document-store calls are chatty, so they log at DEBUG by default."""

    emit_structured_event(DB_QUERY, action, level=level, **kwargs)


def emit_media_event(operation: str, **kwargs: Any) -> None:
    emit_structured_event(MEDIA_OP, operation, **kwargs)


__all__ = [
    "APP_EVENT",
    "DB_QUERY",
    "DEFAULT_EVENT_LOGGER",
    "MEDIA_OP",
    "emit_db_event",
    "emit_media_event",
    "emit_structured_event",
]
