import asyncio

import pytest
from fakes import ScriptedProvider, router_for, text

from orion.events.writer import MemoryEventSink
from orion.orchestrator.compaction import (
    SUMMARY_PREFIX,
    Compactor,
    estimate_tokens,
    estimate_turn_tokens,
    parse_summary,
    render_summary,
    resolve_budget,
    should_compact,
)
from orion.orchestrator.types import ConversationTurn, StructuredFacts
from orion.providers.router import ProviderRouter

SUMMARY = """## Preferences
- Prefers metric units

## Facts & Decisions
- Project codename is Falcon
- Deadline is 2026-11-30

## Open Items
- Confirm the budget with finance

## Key Context
- None
"""


def _turns(count: int, size: int = 400) -> list[ConversationTurn]:
    return [
        ConversationTurn(
            role="user" if i % 2 == 0 else "assistant",
            content=f"turn {i} " + "lorem ipsum " * (size // 12),
        )
        for i in range(count)
    ]


def test_estimate_tokens_is_character_heuristic() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    turns = [ConversationTurn(role="user", content="a" * 40)]
    assert estimate_turn_tokens(turns, system_prompt="b" * 8) == 12


def test_should_compact_boundary() -> None:
    assert should_compact(79_999, 100_000, 0.8) is False
    assert should_compact(80_000, 100_000, 0.8) is True
    assert should_compact(80_001, 100_000, 0.8) is True


def test_resolve_budget_falls_back_to_default() -> None:
    assert resolve_budget(None) == 100_000
    assert resolve_budget(0) == 100_000
    assert resolve_budget(32_000) == 32_000


def test_parse_and_render_summary_round_trip_sections() -> None:
    facts = parse_summary(SUMMARY)
    assert facts.preferences == ("Prefers metric units",)
    assert facts.decisions == ("Project codename is Falcon", "Deadline is 2026-11-30")
    assert facts.open_items == ("Confirm the budget with finance",)
    assert facts.key_context == ()

    rendered = render_summary(facts)
    assert rendered.startswith(SUMMARY_PREFIX)
    assert "## Facts & Decisions\n- Project codename is Falcon" in rendered
    assert "## Key Context\n- None" in rendered


def test_unstructured_summary_lands_in_key_context() -> None:
    facts = parse_summary("The user is planning a trip to Lisbon.")
    assert facts.key_context == ("The user is planning a trip to Lisbon.",)
    assert StructuredFacts().is_empty()


@pytest.mark.asyncio
async def test_compact_fifty_turns_keeps_tail_and_shrinks() -> None:
    sink = MemoryEventSink()
    provider = ScriptedProvider(text(SUMMARY))
    compactor = Compactor(ProviderRouter(provider), sink=sink)
    turns = _turns(50)

    result = await compactor.compact(turns, 6, 1024, trace_id="trc_1")

    assert result.compaction_applied is True
    assert len(result.turns) == 7
    assert result.turns[0].kind == "summary"
    assert result.turns[0].content.startswith(SUMMARY_PREFIX)
    assert all(a is b for a, b in zip(result.turns[1:], turns[-6:], strict=True))
    assert result.compacted_token_estimate < result.original_token_estimate
    assert result.summary is not None
    assert result.summary.covered_turn_range == (0, 43)
    assert result.summary.structured_facts.decisions[0] == "Project codename is Falcon"
    assert sink.types() == ["compaction.triggered", "compaction.complete"]
    prompt = provider.calls[0]["messages"]
    assert "Facts & Decisions" in prompt[0]["content"]
    assert "turn 43" in prompt[1]["content"]
    assert "turn 44" not in prompt[1]["content"]


@pytest.mark.asyncio
async def test_compact_failure_returns_input_unchanged() -> None:
    sink = MemoryEventSink()
    compactor = Compactor(router_for(RuntimeError("provider down")), sink=sink)
    turns = _turns(20)

    result = await compactor.compact(turns, 6, 1024, trace_id="trc_1")

    assert result.compaction_applied is False
    assert list(result.turns) == turns
    assert result.error is not None
    assert "provider down" in result.error
    assert sink.types()[-1] == "compaction.failed"


@pytest.mark.asyncio
async def test_compact_timeout_returns_input_unchanged() -> None:
    provider = ScriptedProvider(text(SUMMARY), delay=1.0)
    compactor = Compactor(ProviderRouter(provider), timeout_seconds=0.05)
    turns = _turns(20)

    result = await asyncio.wait_for(compactor.compact(turns, 6, 1024, trace_id="t"), 2)

    assert result.compaction_applied is False
    assert list(result.turns) == turns


@pytest.mark.asyncio
async def test_empty_summary_is_a_compaction_failure() -> None:
    sink = MemoryEventSink()
    compactor = Compactor(router_for(text("   ")), sink=sink)
    turns = _turns(20)

    result = await compactor.compact(turns, 6, 1024, trace_id="trc_1")

    assert result.compaction_applied is False
    assert list(result.turns) == turns
    assert result.error == "CompactionFailed: model returned an empty summary"
    assert sink.types()[-1] == "compaction.failed"


@pytest.mark.asyncio
async def test_caller_timeout_tightens_compactor_timeout() -> None:
    provider = ScriptedProvider(text(SUMMARY), delay=1.0)
    compactor = Compactor(ProviderRouter(provider), timeout_seconds=20)
    turns = _turns(20)

    result = await asyncio.wait_for(
        compactor.compact(turns, 6, 1024, trace_id="t", timeout_seconds=0.05), 2
    )

    assert result.compaction_applied is False
    assert result.error is not None
    assert result.error.startswith("TimeoutError")


@pytest.mark.asyncio
async def test_compact_skips_when_nothing_to_summarize() -> None:
    provider = ScriptedProvider(text(SUMMARY))
    compactor = Compactor(ProviderRouter(provider))
    turns = _turns(4)

    result = await compactor.compact(turns, 6, 1024, trace_id="trc_1")

    assert result.compaction_applied is False
    assert provider.calls == []


@pytest.mark.asyncio
async def test_compact_rejects_summary_that_does_not_shrink() -> None:
    bloated = "## Key Context\n" + "\n".join(f"- fact {i} " + "x" * 80 for i in range(60))
    compactor = Compactor(router_for(text(bloated)))
    turns = _turns(8, size=24)

    result = await compactor.compact(turns, 2, 4096, trace_id="trc_1")

    assert result.compaction_applied is False
    assert result.error == "summary_not_smaller"


@pytest.mark.asyncio
async def test_existing_summary_is_folded_into_new_one() -> None:
    provider = ScriptedProvider(text(SUMMARY))
    compactor = Compactor(ProviderRouter(provider))
    earlier = ConversationTurn(
        role="assistant", content=render_summary(parse_summary(SUMMARY)), kind="summary"
    )
    turns = [earlier, *_turns(12)]

    result = await compactor.compact(turns, 4, 1024, trace_id="trc_1")

    assert result.compaction_applied is True
    assert "[earlier summary]" in provider.calls[0]["messages"][1]["content"]
    assert sum(1 for turn in result.turns if turn.kind == "summary") == 1
