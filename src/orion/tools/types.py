"""Tool call data types shared by the client, runtime and loop."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from orion.errors import ToolError
from orion.ids import new_id

ErrorKind = Literal["unavailable", "execution_failed", "invalid_input"]
CallOutcome = Literal["success", "timeout", "error"]

LOCAL_SERVER_ID = "local"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True, frozen=True)
class ToolSchema:
    name: str
    description: str
    input_schema: dict[str, Any]
    server_id: str


@dataclass(slots=True)
class ToolOutcome:
    """Tagged result returned by tool clients. Clients never raise."""

    success: bool
    data: Any = None
    error_kind: ErrorKind | None = None
    error_message: str = ""
    retryable: bool = False

    @classmethod
    def ok(cls, data: Any) -> "ToolOutcome":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, *, retryable: bool) -> "ToolOutcome":
        return cls(success=False, error_kind=kind, error_message=message, retryable=retryable)

    @classmethod
    def from_error(cls, exc: ToolError) -> "ToolOutcome":
        return cls.fail(exc.kind, str(exc), retryable=exc.retryable)  # type: ignore[arg-type]


@dataclass(slots=True)
class ToolCallRequest:
    tool_name: str
    server_id: str
    arguments: dict[str, Any] = field(default_factory=dict)
    requested_at: str = field(default_factory=_now_iso)
    call_id: str = field(default_factory=lambda: new_id("call"))


@dataclass(slots=True)
class ToolCallResult:
    call_id: str
    tool_name: str
    server_id: str
    outcome: CallOutcome
    payload: Any = None
    error_detail: str = ""
    error_kind: ErrorKind | None = None
    duration_ms: int = 0
    retry_count: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == "success"


@dataclass(slots=True)
class ServerHealth:
    server_id: str
    available: bool = True
    consecutive_failures: int = 0
    last_error: str | None = None
    last_error_at: float | None = None
    updated_at: float = 0.0
