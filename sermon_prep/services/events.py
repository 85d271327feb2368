"""Structured event helpers shared by the store, the sync engine and the web layer.

An event is one log line ``[TYPE] message (key=value, ...)``; the same data
travels in the record's ``extra`` so handlers can pick it apart.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("sermon_prep.events")


class EventType(str, Enum):
    APP = "APP_EVENT"
    DB_QUERY = "DB_QUERY"
    TASK_STATE = "TASK_STATE"


def sanitize_context_value(value: Any) -> Any:
    """Return a JSON-friendly, log-friendly version of *value*; blanks become ``None``."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return sanitize_context_value(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        cleaned = normalize_context(value)
        return cleaned or None
    if isinstance(value, (list, tuple, set, frozenset)):
        text = ", ".join(str(sanitize_context_value(item)) for item in value)
    else:
        text = str(value)
    text = text.strip()
    return text or None


def normalize_context(values: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    """Drop empty entries and stringify keys."""

    normalized: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        if key is None:
            continue
        value = sanitize_context_value(raw)
        if value is None:
            continue
        normalized[str(key)] = value
    return normalized


def format_event_line(event_type: str, message: str, details: Mapping[str, Any]) -> str:
    head = f"[{event_type}] {message}" if event_type else message
    if not details:
        return head
    return f"{head} ({', '.join(f'{key}={value}' for key, value in details.items())})"


def emit_structured_event(
    event_type: EventType | str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    type_name = event_type.value if isinstance(event_type, EventType) else str(event_type or "")
    base_message = str(message).strip()
    sections = {
        "debug_correlation": normalize_context(correlation),
        "debug_context": normalize_context(context),
        "debug_payload": normalize_context(payload),
    }
    details: Dict[str, Any] = {}
    for section in sections.values():
        details.update(section)

    extra: Dict[str, Any] = {"debug_event": base_message, "debug_event_type": type_name}
    extra.update({name: section for name, section in sections.items() if section})
    if duration_ms is not None:
        extra["debug_duration_ms"] = float(duration_ms)
    logger.log(level, format_event_line(type_name, base_message, details), extra=extra)


def emit_db_event(
    action: str,
    *,
    level: int = logging.DEBUG,
    **kwargs: Any,
) -> None:
    """Report one document-store statement."""

    emit_structured_event(EventType.DB_QUERY, action, level=level, **kwargs)


def emit_task_event(
    phase: str,
    message: str,
    **kwargs: Any,
) -> None:
    emit_structured_event(EventType.TASK_STATE, message or phase, **kwargs)


def emit_sync_event(
    phase: str,
    series_id: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    """Report a phase (``started``/``finished``/``failed``) of a series sync."""

    emit_task_event(
        phase,
        f"Series sync {phase}",
        payload={"task": "series_sync", "phase": phase, "series_id": series_id, **(payload or {})},
        duration_ms=duration_ms,
        level=level,
    )


__all__ = [
    "DEFAULT_EVENT_LOGGER",
    "EventType",
    "emit_db_event",
    "emit_structured_event",
    "emit_sync_event",
    "emit_task_event",
    "format_event_line",
    "normalize_context",
    "sanitize_context_value",
]
