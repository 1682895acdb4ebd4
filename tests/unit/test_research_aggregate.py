import json

import pytest
from fakes import ScriptedProvider, router_for, text

from orion.events.writer import MemoryEventSink
from orion.providers.router import ProviderRouter
from orion.research.aggregate import (
    LOW_QUALITY_DISCLAIMER,
    NO_FINDINGS_SUMMARY,
    NO_SOURCES_SUMMARY,
    Aggregator,
    render_answer,
)
from orion.research.types import Finding, SubagentResult

QUERY = "kafka retention policy defaults"


def _finding(content: str, source: str, *, relevance=None, confidence=0.6, kind="tool_server"):
    return Finding(
        content=content,
        source_citations=[source],
        relevance_score=relevance,
        confidence_score=confidence,
        source_kind=kind,
        source_name="search",
    )


def _result(name: str, findings=None, *, success=True, error=None):
    return SubagentResult(
        task_id=f"sub_{name}",
        source_kind="tool_server",
        source_name=name,
        success=success,
        findings=findings or [],
        error=error,
    )


def test_select_filters_dedupes_and_ranks() -> None:
    aggregator = Aggregator(router_for(), relevance_threshold=0.3)
    results = [
        _result(
            "search",
            [
                _finding(
                    "Kafka retention defaults to seven days.", "https://a.test", confidence=0.9
                ),
                _finding("Bananas are yellow.", "https://b.test"),
            ],
        ),
        _result(
            "docs",
            [
                _finding("kafka retention DEFAULTS to seven days", "https://docs.test"),
                _finding("Kafka retention policy can be size based.", "https://c.test"),
            ],
        ),
        _result("broken", success=False, error="timed out"),
    ]

    selected = aggregator.select(QUERY, results)

    contents = [finding.content for finding in selected]
    assert "Bananas are yellow." not in contents
    assert len(selected) == 2
    merged = next(f for f in selected if "seven days" in f.content)
    assert merged.source_citations == ["https://a.test", "https://docs.test"]
    assert all(f.relevance_score is not None for f in selected)
    assert selected[0].relevance_score >= selected[1].relevance_score


def test_select_leaves_subagent_findings_untouched() -> None:
    aggregator = Aggregator(router_for(), relevance_threshold=0.3)
    first = _finding("Kafka retention defaults to seven days.", "https://a.test", confidence=0.9)
    second = _finding("kafka retention defaults to seven days", "https://docs.test")
    results = [_result("search", [first]), _result("docs", [second])]

    once = aggregator.select(QUERY, results)
    twice = aggregator.select(QUERY, results)

    assert first.source_citations == ["https://a.test"]
    assert second.source_citations == ["https://docs.test"]
    assert first.relevance_score is None
    assert once[0].source_citations == ["https://a.test", "https://docs.test"]
    assert twice[0].source_citations == once[0].source_citations
    assert once[0] is not first


@pytest.mark.asyncio
async def test_aggregate_uses_only_successful_results() -> None:
    synthesis = {
        "summary": "Kafka retention policy defaults to seven days [1] and can be size based [2].",
        "findings": [
            {"statement": "Retention defaults to seven days.", "confidence": 0.9, "citations": [1]},
            {"statement": "Retention can be size based.", "confidence": 0.7, "citations": [2]},
        ],
        "contradictions": [],
        "gaps": [],
    }
    provider = ScriptedProvider(text(json.dumps(synthesis)))
    sink = MemoryEventSink()
    aggregator = Aggregator(ProviderRouter(provider), sink=sink)
    results = [
        _result("search", [_finding("Kafka retention defaults to seven days.", "https://a.test")]),
        _result("web", success=False, error="server crashed"),
        _result("docs", [_finding("Kafka retention policy can be size based.", "https://c.test")]),
    ]

    answer = await aggregator.aggregate(QUERY, results, trace_id="trc_1")

    assert answer.sources == ["https://a.test", "https://c.test"]
    assert [f.citations for f in answer.findings] == [[1], [2]]
    assert answer.gaps == ["No results from web."]
    assert answer.quality_score > 0
    prompt = provider.calls[0]["messages"][1]["content"]
    assert "server crashed" not in prompt
    assert "## Source kind: tool_server" in prompt
    event = sink.of_type("research.aggregate")[0]
    assert event.payload_redacted["failed_tasks"] == 1
    assert event.payload_redacted["synthesized_by_model"] is True


@pytest.mark.asyncio
async def test_all_failed_yields_explicit_no_sources_answer() -> None:
    provider = ScriptedProvider()
    aggregator = Aggregator(ProviderRouter(provider))
    results = [
        _result("search", success=False, error="down"),
        _result("docs", success=False, error="down"),
    ]

    answer = await aggregator.aggregate(QUERY, results, trace_id="trc_1")

    assert answer.summary == NO_SOURCES_SUMMARY
    assert answer.findings == []
    assert answer.quality_score == 0.0
    assert answer.low_quality is True
    assert len(answer.gaps) == 2
    assert provider.calls == []


@pytest.mark.asyncio
async def test_nothing_relevant_yields_no_findings_answer() -> None:
    aggregator = Aggregator(router_for())
    results = [_result("search", [_finding("Bananas are yellow.", "https://b.test")])]

    answer = await aggregator.aggregate(QUERY, results, trace_id="trc_1")

    assert answer.summary == NO_FINDINGS_SUMMARY
    assert answer.low_quality is True


@pytest.mark.asyncio
async def test_synthesis_failure_falls_back_to_ranked_findings() -> None:
    aggregator = Aggregator(router_for(RuntimeError("model down")))
    results = [
        _result("search", [_finding("Kafka retention defaults to seven days.", "https://a.test")])
    ]

    answer = await aggregator.aggregate(QUERY, results, trace_id="trc_1")

    assert answer.summary.startswith("Kafka retention defaults to seven days. [1]")
    assert answer.findings[0].citations == [1]
    assert answer.sources == ["https://a.test"]


@pytest.mark.asyncio
async def test_out_of_range_citations_are_dropped() -> None:
    synthesis = {
        "summary": "Kafka retention defaults to seven days [1].",
        "findings": [{"statement": "Seven days [1] [7].", "confidence": 2, "citations": [1, 7]}],
    }
    aggregator = Aggregator(router_for(text("```json\n" + json.dumps(synthesis) + "\n```")))
    results = [
        _result("search", [_finding("Kafka retention defaults to seven days.", "https://a.test")])
    ]

    answer = await aggregator.aggregate(QUERY, results, trace_id="trc_1")

    assert answer.findings[0].citations == [1]
    assert answer.findings[0].confidence == 1.0


def test_render_answer_includes_sections_and_disclaimer() -> None:
    from orion.research.types import AggregatedAnswer, SynthesizedFinding

    answer = AggregatedAnswer(
        summary="Retention is seven days [1].",
        findings=[SynthesizedFinding("Seven days.", 0.8, [1])],
        contradictions=["[1] says seven days, [2] says three"],
        gaps=["No results from web."],
        sources=["https://a.test"],
        quality_score=0.2,
        low_quality=True,
    )
    rendered = render_answer(answer)
    assert rendered.startswith(LOW_QUALITY_DISCLAIMER)
    assert "Contradictions:" in rendered
    assert "Gaps:\n- No results from web." in rendered
    assert "Sources:\n[1] https://a.test" in rendered
    assert rendered.endswith("Quality score: 0.20")
