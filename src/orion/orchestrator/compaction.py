"""Context compaction: fold older turns into one structured summary turn."""

import asyncio
import logging
import math
import re
from collections.abc import Sequence

from orion.errors import CompactionFailed, ProviderError
from orion.events.models import EventInput
from orion.events.writer import EventSink, emit_event
from orion.ids import new_id
from orion.orchestrator.types import (
    CompactionResult,
    CompactionSummary,
    ConversationTurn,
    StructuredFacts,
)
from orion.providers.router import ProviderRouter

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_TOKENS = 100_000
DEFAULT_TIMEOUT_SECONDS = 20.0
SUMMARY_PREFIX = "[Previous conversation summary]"

SECTION_TITLES = {
    "preferences": "Preferences",
    "decisions": "Facts & Decisions",
    "open_items": "Open Items",
    "key_context": "Key Context",
}

SUMMARIZATION_PROMPT = """You compress conversation history for an assistant that will keep \
working with the same user. Summarize the conversation below into exactly these four \
sections, each a markdown heading followed by short bullet points:

## Preferences
How the user likes to work, formats they asked for, things they said to avoid.

## Facts & Decisions
Concrete facts, names, numbers, dates, links and every decision that was made.

## Open Items
Questions not yet answered, tasks in progress, promised follow-ups.

## Key Context
Anything else needed to continue the conversation without re-asking.

Rules:
- Preserve exact values (IDs, numbers, file paths, URLs) verbatim.
- If an earlier summary is included, merge it; do not drop its facts.
- Skip greetings, filler and anything already resolved and irrelevant.
- Write "- None" under a section with nothing to record.
- Stay under {max_tokens} tokens."""

_HEADING = re.compile(r"^#{1,6}\s*(.+?)\s*:?\s*$")
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*)$")


def estimate_tokens(text: str) -> int:
    """Cheap heuristic (~4 characters per token); never calls a tokenizer."""
    return math.ceil(len(text) / 4)


def estimate_turn_tokens(
    turns: Sequence[ConversationTurn],
    *,
    system_prompt: str = "",
) -> int:
    total = estimate_tokens(system_prompt)
    for turn in turns:
        total += estimate_tokens(turn.content)
    return total


def should_compact(estimated_tokens: int, budget_tokens: int, threshold_fraction: float) -> bool:
    return estimated_tokens >= math.floor(budget_tokens * threshold_fraction)


def resolve_budget(configured: int | None) -> int:
    if configured is not None and configured > 0:
        return configured
    return DEFAULT_BUDGET_TOKENS


def _section_key(title: str) -> str | None:
    lowered = title.lower()
    if "preference" in lowered:
        return "preferences"
    if "decision" in lowered or "fact" in lowered:
        return "decisions"
    if "open" in lowered:
        return "open_items"
    if "context" in lowered:
        return "key_context"
    return None


def parse_summary(text: str) -> StructuredFacts:
    """Read the four sections back out of a model-written summary."""
    sections: dict[str, list[str]] = {key: [] for key in SECTION_TITLES}
    current: str | None = None
    loose: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        heading = _HEADING.match(line)
        if heading:
            current = _section_key(heading.group(1))
            continue
        bullet = _BULLET.match(line)
        item = (bullet.group(1) if bullet else line).strip()
        if not item or item.lower() in {"none", "none.", "n/a"}:
            continue
        if current is None:
            loose.append(item)
        else:
            sections[current].append(item)
    if loose:
        sections["key_context"] = loose + sections["key_context"]
    return StructuredFacts(
        preferences=tuple(sections["preferences"]),
        decisions=tuple(sections["decisions"]),
        open_items=tuple(sections["open_items"]),
        key_context=tuple(sections["key_context"]),
    )


def render_summary(facts: StructuredFacts) -> str:
    parts = [SUMMARY_PREFIX]
    for key, title in SECTION_TITLES.items():
        items: tuple[str, ...] = getattr(facts, key)
        body = "\n".join(f"- {item}" for item in items) if items else "- None"
        parts.append(f"## {title}\n{body}")
    return "\n\n".join(parts)


def _render_transcript(turns: Sequence[ConversationTurn]) -> str:
    lines: list[str] = []
    for turn in turns:
        label = turn.role
        if turn.kind == "tool_result":
            label = "tool results"
        elif turn.kind == "summary":
            label = "earlier summary"
        lines.append(f"[{label}]\n{turn.content}")
    return "\n\n".join(lines)


class Compactor:
    def __init__(
        self,
        router: ProviderRouter,
        *,
        sink: EventSink | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.router = router
        self.sink = sink
        self.timeout_seconds = timeout_seconds

    def _emit(self, event_type: str, trace_id: str, payload: dict[str, object]) -> None:
        emit_event(
            self.sink,
            EventInput(
                trace_id=trace_id,
                span_id=new_id("spn"),
                parent_span_id=None,
                event_type=event_type,
                component="orchestrator.compaction",
                payload=payload,
            ),
        )

    async def _summarize(self, prefix: Sequence[ConversationTurn], max_summary_tokens: int) -> str:
        messages = [
            {
                "role": "system",
                "content": SUMMARIZATION_PROMPT.format(max_tokens=max_summary_tokens),
            },
            {"role": "user", "content": _render_transcript(prefix)},
        ]
        response, _lane, _primary_error = await self.router.generate(
            messages, None, temperature=0.0, max_tokens=max_summary_tokens
        )
        text = response.text.strip()
        if not text:
            raise CompactionFailed("model returned an empty summary")
        return text

    async def compact(
        self,
        turns: Sequence[ConversationTurn],
        keep_last_n: int,
        max_summary_tokens: int,
        *,
        trace_id: str,
        timeout_seconds: float | None = None,
    ) -> CompactionResult:
        """Summarize all but the last ``keep_last_n`` turns.

        Best-effort: a provider failure, a timeout, an empty summary, or a
        summary that would not shrink the transcript returns the input
        unchanged with ``compaction_applied=False``. ``timeout_seconds``
        can only tighten the compactor's own timeout.
        """
        original = tuple(turns)
        original_tokens = estimate_turn_tokens(original)
        keep = max(0, keep_last_n)

        def _unchanged(error: str | None = None) -> CompactionResult:
            return CompactionResult(
                turns=original,
                compaction_applied=False,
                original_token_estimate=original_tokens,
                compacted_token_estimate=original_tokens,
                error=error,
            )

        if len(original) <= keep:
            return _unchanged()
        split = len(original) - keep
        prefix = original[:split]
        tail = original[split:]
        if len(prefix) == 1 and prefix[0].kind == "summary":
            return _unchanged()

        prefix_tokens = estimate_turn_tokens(prefix)
        logger.info(
            "compaction.summarizing turns=%s keep_last_n=%s prefix_tokens=%s",
            len(prefix),
            keep,
            prefix_tokens,
        )
        self._emit(
            "compaction.triggered",
            trace_id,
            {
                "turn_count": len(original),
                "summarized_turns": len(prefix),
                "keep_last_n": keep,
                "original_estimate": original_tokens,
            },
        )
        timeout = self.timeout_seconds
        if timeout_seconds is not None:
            timeout = min(timeout, max(0.0, timeout_seconds))
        try:
            text = await asyncio.wait_for(
                self._summarize(prefix, max_summary_tokens), timeout=timeout
            )
        except (CompactionFailed, ProviderError, TimeoutError) as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.warning("compaction.failed error=%s", error)
            self._emit(
                "compaction.failed",
                trace_id,
                {"error": error, "original_estimate": original_tokens},
            )
            return _unchanged(error)

        facts = parse_summary(text)
        if facts.is_empty():
            facts = StructuredFacts(key_context=(text,))
        content = render_summary(facts)
        max_chars = max_summary_tokens * 4 + len(SUMMARY_PREFIX) + 2
        if len(content) > max_chars:
            content = content[:max_chars].rstrip() + "\n[...truncated]"
        summary_turn = ConversationTurn(role="assistant", content=content, kind="summary")
        compacted = (summary_turn, *tail)
        compacted_tokens = estimate_turn_tokens(compacted)
        if compacted_tokens >= original_tokens:
            logger.info(
                "compaction.skipped summary not smaller original=%s compacted=%s",
                original_tokens,
                compacted_tokens,
            )
            self._emit(
                "compaction.failed",
                trace_id,
                {"error": "summary_not_smaller", "original_estimate": original_tokens},
            )
            return _unchanged("summary_not_smaller")

        summary = CompactionSummary(
            covered_turn_range=(0, split - 1),
            structured_facts=facts,
            original_token_estimate=original_tokens,
            compacted_token_estimate=compacted_tokens,
            text=content,
        )
        logger.info(
            "compaction.complete original_tokens=%s compacted_tokens=%s",
            original_tokens,
            compacted_tokens,
        )
        self._emit(
            "compaction.complete",
            trace_id,
            {
                "original_estimate": original_tokens,
                "compacted_estimate": compacted_tokens,
                "summarized_turns": len(prefix),
                "kept_turns": len(tail),
            },
        )
        return CompactionResult(
            turns=compacted,
            compaction_applied=True,
            original_token_estimate=original_tokens,
            compacted_token_estimate=compacted_tokens,
            summary=summary,
        )
