"""Event emission helpers."""

import logging
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from time import perf_counter
from typing import Any, Protocol, cast

from orion.events.models import EmittedEvent, EventInput
from orion.ids import new_id
from orion.logging import get_event_logger

logger = logging.getLogger(__name__)

SENSITIVE_KEY_PATTERN = re.compile(
    r"password|passwd|token|secret|key|auth|credential|cookie|session",
    re.IGNORECASE,
)
MAX_LOGGED_STRING = 200
TRUNCATION_MARKER = "...[truncated]"


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def is_sensitive_key(key: object) -> bool:
    return SENSITIVE_KEY_PATTERN.search(str(key)) is not None


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "[REDACTED]" if is_sensitive_key(key) else _redact_value(nested)
            for key, nested in value.items()
        }
    if isinstance(value, list | tuple):
        return [_redact_value(item) for item in value]
    if isinstance(value, str) and len(value) > MAX_LOGGED_STRING:
        return value[:MAX_LOGGED_STRING] + TRUNCATION_MARKER
    return value


def redact_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return cast(dict[str, Any], _redact_value(payload))


class EventSink(Protocol):
    def write(self, event: EmittedEvent) -> None: ...


class LogEventSink:
    """Writes events through structlog so they share the process log stream."""

    def __init__(self, name: str = "orion.events") -> None:
        self._log = get_event_logger(name)

    def write(self, event: EmittedEvent) -> None:
        self._log.info(
            event.event_type,
            trace_id=event.trace_id,
            span_id=event.span_id,
            parent_span_id=event.parent_span_id,
            component=event.component,
            **event.payload_redacted,
        )


class MemoryEventSink:
    """Keeps events in process; used by tests and ``orion ask --trace``."""

    def __init__(self) -> None:
        self.events: list[EmittedEvent] = []

    def write(self, event: EmittedEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[EmittedEvent]:
        return [event for event in self.events if event.event_type == event_type]

    def types(self) -> list[str]:
        return [event.event_type for event in self.events]


def emit_event(sink: EventSink | None, event: EventInput) -> str:
    event_id = new_id("evt")
    if sink is None:
        return event_id
    emitted = EmittedEvent(
        id=event_id,
        trace_id=event.trace_id,
        span_id=event.span_id,
        parent_span_id=event.parent_span_id,
        event_type=event.event_type,
        component=event.component,
        payload_redacted=redact_payload(event.payload),
        created_at=now_iso(),
    )
    try:
        sink.write(emitted)
    except Exception as exc:
        logger.warning("Event sink write failed type=%s error=%s", event.event_type, exc)
    return event_id


class Span:
    """Handle yielded by ``span``; lets the body attach fields to the end event."""

    def __init__(self, span_id: str) -> None:
        self.span_id = span_id
        self.end_payload: dict[str, Any] = {}
        self.outcome = "ok"


@asynccontextmanager
async def span(
    sink: EventSink | None,
    name: str,
    *,
    trace_id: str,
    component: str,
    parent_span_id: str | None = None,
    **payload: Any,
) -> AsyncIterator[Span]:
    """Emit ``<name>.start`` and ``<name>.end`` sharing one span id."""
    current = Span(new_id("spn"))
    emit_event(
        sink,
        EventInput(
            trace_id=trace_id,
            span_id=current.span_id,
            parent_span_id=parent_span_id,
            event_type=f"{name}.start",
            component=component,
            payload=dict(payload),
        ),
    )
    started = perf_counter()
    try:
        yield current
    except BaseException as exc:
        current.outcome = "error"
        current.end_payload.setdefault("error", type(exc).__name__)
        raise
    finally:
        end_payload = {
            **payload,
            **current.end_payload,
            "outcome": current.outcome,
            "duration_ms": int((perf_counter() - started) * 1000),
        }
        emit_event(
            sink,
            EventInput(
                trace_id=trace_id,
                span_id=current.span_id,
                parent_span_id=parent_span_id,
                event_type=f"{name}.end",
                component=component,
                payload=end_payload,
            ),
        )
