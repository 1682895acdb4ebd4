"""Event model definitions."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class EventInput:
    trace_id: str
    span_id: str
    parent_span_id: str | None
    event_type: str
    component: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EmittedEvent:
    id: str
    trace_id: str
    span_id: str
    parent_span_id: str | None
    event_type: str
    component: str
    payload_redacted: dict[str, Any]
    created_at: str
