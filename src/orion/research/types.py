"""Research task and result types."""

from dataclasses import dataclass, field
from typing import Literal

from orion.ids import new_id

SourceKind = Literal["knowledge", "tool_server"]


@dataclass(slots=True, frozen=True)
class SubagentTask:
    source_kind: SourceKind
    source_name: str
    query: str
    instructions: str
    timeout_ms: int
    id: str = field(default_factory=lambda: new_id("sub"))


@dataclass(slots=True)
class Finding:
    content: str
    source_citations: list[str]
    relevance_score: float | None
    confidence_score: float
    source_kind: SourceKind
    source_name: str


@dataclass(slots=True)
class SubagentResult:
    task_id: str
    source_kind: SourceKind
    source_name: str
    success: bool
    findings: list[Finding] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0


@dataclass(slots=True)
class SynthesizedFinding:
    statement: str
    confidence: float
    citations: list[int]


@dataclass(slots=True)
class AggregatedAnswer:
    summary: str
    findings: list[SynthesizedFinding]
    contradictions: list[str]
    gaps: list[str]
    sources: list[str]
    quality_score: float
    low_quality: bool = False
