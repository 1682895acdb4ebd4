"""Conversation and loop data types."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from orion.tools.types import ToolCallResult

Role = Literal["user", "assistant"]
TurnKind = Literal["message", "tool_result", "summary"]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    role: Role
    content: str
    created_at: str = field(default_factory=_now_iso)
    kind: TurnKind = "message"

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class Transcript:
    """Append-only turn sequence owned by one loop.

    Turns are immutable; compaction swaps in a new sequence whose tail is
    the same turn objects.
    """

    def __init__(self, turns: Sequence[ConversationTurn] = ()) -> None:
        self._turns: tuple[ConversationTurn, ...] = tuple(turns)

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return self._turns

    def append(self, turn: ConversationTurn) -> None:
        self._turns = (*self._turns, turn)

    def replace(self, turns: Sequence[ConversationTurn]) -> None:
        self._turns = tuple(turns)

    def messages(self) -> list[dict[str, str]]:
        return [turn.as_message() for turn in self._turns]

    def __len__(self) -> int:
        return len(self._turns)


@dataclass(slots=True, frozen=True)
class StructuredFacts:
    preferences: tuple[str, ...] = ()
    decisions: tuple[str, ...] = ()
    open_items: tuple[str, ...] = ()
    key_context: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.preferences or self.decisions or self.open_items or self.key_context)


@dataclass(slots=True, frozen=True)
class CompactionSummary:
    covered_turn_range: tuple[int, int]
    structured_facts: StructuredFacts
    original_token_estimate: int
    compacted_token_estimate: int
    text: str


@dataclass(slots=True)
class CompactionResult:
    turns: tuple[ConversationTurn, ...]
    compaction_applied: bool
    original_token_estimate: int
    compacted_token_estimate: int
    summary: CompactionSummary | None = None
    error: str | None = None


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    MODEL_RESPONDED = "model_responded"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"


@dataclass(slots=True)
class AgentReply:
    text: str
    state: LoopState
    iterations: int
    stop_reason: str
    trace_id: str
    tool_results: list[ToolCallResult] = field(default_factory=list)
    compaction_applied: bool = False
    degraded: bool = False
    verification: dict[str, Any] = field(default_factory=dict)
