"""Structured log events emitted by the pipeline stages and repositories."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("lecture_pipeline.events")

_MAX_VALUE_CHARS = 200

EventLogger = logging.Logger | logging.LoggerAdapter


def _loggable(value: Any) -> Any:
    """Reduce *value* to something a log formatter or JSON encoder can handle.

    Empty results come back as ``None`` so callers can drop them.
    """

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return _loggable(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return compact(value) or None
    if isinstance(value, (list, tuple, set, frozenset)):
        text = ", ".join(str(item) for item in value)
    else:
        text = str(value.as_posix() if isinstance(value, Path) else value)
    text = text.strip()
    if not text:
        return None
    if len(text) > _MAX_VALUE_CHARS:
        return text[:_MAX_VALUE_CHARS] + "…"
    return text


def compact(values: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    """Return *values* with loggable entries only, dropping empty ones."""

    cleaned: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        if key is None or key == "":
            continue
        value = _loggable(raw)
        if value is None or value == "":
            continue
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
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log ``[event_type] message`` with its details attached as ``extra`` fields.

    The rendered line lists correlation ids first, then context, then payload. The
    same sections are available to handlers as ``pipeline_correlation``,
    ``pipeline_context`` and ``pipeline_payload`` record attributes.
    """

    text = str(message).strip()
    sections = {
        "pipeline_correlation": compact(correlation),
        "pipeline_context": compact(context),
        "pipeline_payload": compact(payload),
    }
    details = {key: value for section in sections.values() for key, value in section.items()}

    line = f"[{event_type}] {text}" if event_type else text
    if details:
        line += " (" + ", ".join(f"{key}={value}" for key, value in details.items()) + ")"
    if duration_ms is not None:
        line += f" in {duration_ms:.1f}ms"

    extra: Dict[str, Any] = {"pipeline_event": text, "pipeline_event_type": event_type or ""}
    extra.update({name: section for name, section in sections.items() if section})
    if duration_ms is not None:
        extra["pipeline_duration_ms"] = float(duration_ms)
    logger.log(level, line, extra=extra)


def emit_db_event(
    action: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Record one repository call; the signature repositories expect of an emitter."""

    emit_structured_event(
        "DB_QUERY",
        action,
        payload=payload,
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def emit_stage_event(
    stage: str,
    outcome: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Report the outcome of one stage invocation (``accepted``, ``failed``...)."""

    emit_structured_event(
        "STAGE_STATE",
        f"{stage} {outcome}",
        payload={"stage": stage, "outcome": outcome, **(payload or {})},
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def emit_stream_event(
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    level: int = logging.DEBUG,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    emit_structured_event("STREAM", message, payload=payload, level=level, logger=logger)


__all__ = [
    "DEFAULT_EVENT_LOGGER",
    "EventLogger",
    "compact",
    "emit_db_event",
    "emit_stage_event",
    "emit_stream_event",
    "emit_structured_event",
]
