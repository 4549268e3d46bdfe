"""Structured pipeline events rendered onto standard :mod:`logging` records.

Each event carries a type tag, a short message and a flat mapping of
details. The details are attached to the record as ``event_*`` attributes
and appended to the rendered message as ``key=value`` pairs, so plain text
handlers and structured formatters see the same information.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Mapping, Optional


DB_QUERY = "DB_QUERY"
OBJECT_OP = "OBJECT_OP"
TASK_STATE = "TASK_STATE"
APP_EVENT = "APP_EVENT"

DEFAULT_EVENT_LOGGER = logging.getLogger("mangapub.events")

MAX_TEXT_LENGTH = 200
MAX_SEQUENCE_ITEMS = 10


def _clip(text: str) -> Optional[str]:
    text = text.strip()
    if not text:
        return None
    if len(text) <= MAX_TEXT_LENGTH:
        return text
    return text[:MAX_TEXT_LENGTH] + "…"


def _scalar(value: Any) -> Any:
    if isinstance(value, Enum):
        value = value.value
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<{len(value)} bytes>"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, PurePath):
        return value.as_posix()
    return _clip(str(value))


def _sequence(values: Any) -> Optional[str]:
    items = sorted(values, key=str) if isinstance(values, (set, frozenset)) else list(values)
    shown = [str(_scalar(item)) for item in items[:MAX_SEQUENCE_ITEMS]]
    hidden = len(items) - len(shown)
    if hidden > 0:
        shown.append(f"(+{hidden} more)")
    return _clip(", ".join(shown))


def sanitize_context_value(value: Any) -> Any:
    """Reduce *value* to something a JSON formatter can write.

    Mappings are normalised recursively, collections become a short comma
    separated string and everything else is turned into a scalar.
    """

    if isinstance(value, Mapping):
        return normalize_context(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return _sequence(value)
    return _scalar(value)


def normalize_context(values: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    """Sanitise *values*, dropping blank keys and empty results."""

    normalised: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        if key is None or str(key) == "":
            continue
        value = sanitize_context_value(raw)
        if value is None or value == "" or value == {}:
            continue
        normalised[str(key)] = value
    return normalised


@dataclass(frozen=True)
class StructuredEvent:
    event_type: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation: Dict[str, Any] = field(default_factory=dict)
    duration_ms: Optional[float] = None

    def details(self) -> Dict[str, Any]:
        merged = {**self.correlation, **self.payload}
        if self.duration_ms is not None:
            merged["duration_ms"] = round(self.duration_ms, 2)
        return merged

    def render(self) -> str:
        head = f"[{self.event_type}] {self.message}" if self.event_type else self.message
        details = self.details()
        if not details:
            return head
        return f"{head} (" + ", ".join(f"{key}={value}" for key, value in details.items()) + ")"

    def record_extra(self) -> Dict[str, Any]:
        extra: Dict[str, Any] = {"event": self.message, "event_type": self.event_type}
        if self.payload:
            extra["event_payload"] = self.payload
        if self.correlation:
            extra["event_correlation"] = self.correlation
        if self.duration_ms is not None:
            extra["event_duration_ms"] = self.duration_ms
        return extra


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> StructuredEvent:
    event = StructuredEvent(
        event_type=event_type or "",
        message=str(message).strip(),
        payload=normalize_context(payload),
        correlation=normalize_context(correlation),
        duration_ms=None if duration_ms is None else float(duration_ms),
    )
    logger.log(level, event.render(), extra=event.record_extra())
    return event


def emit_db_event(action: str, **kwargs: Any) -> StructuredEvent:
    return emit_structured_event(DB_QUERY, action, **kwargs)


def emit_store_event(operation: str, **kwargs: Any) -> StructuredEvent:
    """Object store calls: ``list_prefix``, ``put``, ``delete_many`` and friends."""

    return emit_structured_event(OBJECT_OP, operation, **kwargs)


def emit_task_event(phase: str, message: str = "", **kwargs: Any) -> StructuredEvent:
    """Pipeline stage progress; the phase doubles as the message when none is given."""

    payload = {"phase": phase, **(kwargs.pop("payload", None) or {})}
    return emit_structured_event(TASK_STATE, message or phase, payload=payload, **kwargs)


__all__ = [
    "APP_EVENT",
    "DB_QUERY",
    "DEFAULT_EVENT_LOGGER",
    "MAX_SEQUENCE_ITEMS",
    "MAX_TEXT_LENGTH",
    "OBJECT_OP",
    "StructuredEvent",
    "TASK_STATE",
    "emit_db_event",
    "emit_store_event",
    "emit_structured_event",
    "emit_task_event",
    "normalize_context",
    "sanitize_context_value",
]
