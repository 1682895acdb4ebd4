"""Merge subagent findings into one cited answer."""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import replace
from typing import Any

from orion.events.models import EventInput
from orion.events.writer import EventSink, emit_event
from orion.ids import new_id
from orion.providers.router import ProviderRouter
from orion.research.citations import CitationRegistry, render_sources, valid_markers
from orion.research.scoring import (
    KeywordOverlapScorer,
    RelevanceScorer,
    fingerprint,
    quality_score,
)
from orion.research.types import (
    AggregatedAnswer,
    Finding,
    SubagentResult,
    SynthesizedFinding,
)

logger = logging.getLogger(__name__)

NO_SOURCES_SUMMARY = (
    "I could not reach any of the research sources for this question, so I have no "
    "findings to report."
)
NO_FINDINGS_SUMMARY = "The research sources did not return anything relevant to this question."
LOW_QUALITY_DISCLAIMER = (
    "Note: this summary is low confidence. Sources were thin or only partly cited; "
    "verify important details."
)

SYNTHESIS_PROMPT = """You merge research findings from several sources into one answer.
Findings are grouped by source kind. Each finding lists its source numbers like [2].

Reply with JSON only:
{
  "summary": "<2-6 sentences answering the question, citing sources inline as [n]>",
  "findings": [{"statement": "...", "confidence": 0.0-1.0, "citations": [n, ...]}],
  "contradictions": ["<where sources disagree, naming both sides with [n]>"],
  "gaps": ["<what the question asks that no finding covers>"]
}
Use only the numbered sources given. Do not invent facts or citations."""


def _extract_json_object(text: str) -> dict[str, Any] | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        decoded = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


class Aggregator:
    def __init__(
        self,
        router: ProviderRouter,
        *,
        scorer: RelevanceScorer | None = None,
        relevance_threshold: float = 0.3,
        max_findings: int = 12,
        low_quality_threshold: float = 0.5,
        synthesis_timeout_seconds: float = 45.0,
        sink: EventSink | None = None,
    ) -> None:
        self.router = router
        self.scorer = scorer or KeywordOverlapScorer()
        self.relevance_threshold = relevance_threshold
        self.max_findings = max_findings
        self.low_quality_threshold = low_quality_threshold
        self.synthesis_timeout_seconds = synthesis_timeout_seconds
        self.sink = sink

    def select(self, query: str, results: list[SubagentResult]) -> list[Finding]:
        """Filter, dedupe and rank copies of the findings from successful results."""
        by_fingerprint: dict[str, Finding] = {}
        for result in results:
            if not result.success:
                continue
            for original in result.findings:
                finding = replace(original, source_citations=list(original.source_citations))
                if finding.relevance_score is None:
                    finding.relevance_score = self.scorer.score(query, finding.content)
                if finding.relevance_score < self.relevance_threshold:
                    continue
                key = fingerprint(finding.content)
                existing = by_fingerprint.get(key)
                if existing is None:
                    by_fingerprint[key] = finding
                    continue
                keep, other = (
                    (finding, existing)
                    if (finding.relevance_score, finding.confidence_score)
                    > (existing.relevance_score or 0.0, existing.confidence_score)
                    else (existing, finding)
                )
                merged = list(dict.fromkeys([*keep.source_citations, *other.source_citations]))
                keep.source_citations = merged
                by_fingerprint[key] = keep
        ranked = sorted(
            by_fingerprint.values(),
            key=lambda f: (f.relevance_score or 0.0, f.confidence_score),
            reverse=True,
        )
        return ranked[: self.max_findings]

    @staticmethod
    def _grouped_prompt(
        query: str, findings: list[Finding], citations: CitationRegistry
    ) -> str:
        groups: dict[str, list[Finding]] = defaultdict(list)
        for finding in findings:
            groups[finding.source_kind].append(finding)
        lines = [f"Question: {query}", ""]
        for kind in sorted(groups):
            lines.append(f"## Source kind: {kind}")
            for finding in groups[kind]:
                numbers = " ".join(f"[{citations.add(c)}]" for c in finding.source_citations)
                lines.append(
                    f"- {finding.content} {numbers} "
                    f"(relevance {finding.relevance_score:.2f}, "
                    f"confidence {finding.confidence_score:.2f})"
                )
            lines.append("")
        lines.append("Sources:")
        lines.append(render_sources(citations.sources))
        return "\n".join(lines)

    async def _synthesize(self, prompt: str) -> dict[str, Any] | None:
        messages = [
            {"role": "system", "content": SYNTHESIS_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            response, _lane, _primary_error = await asyncio.wait_for(
                self.router.generate(messages, None, 0.2, 2048),
                timeout=self.synthesis_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Research synthesis failed error=%s", exc)
            return None
        payload = _extract_json_object(response.text)
        if payload is None or not str(payload.get("summary", "")).strip():
            logger.warning("Research synthesis returned unusable output")
            return None
        return payload

    @staticmethod
    def _fallback(findings: list[Finding], citations: CitationRegistry) -> dict[str, Any]:
        statements: list[dict[str, Any]] = []
        for finding in findings:
            numbers = [citations.add(c) for c in finding.source_citations]
            statements.append(
                {
                    "statement": finding.content,
                    "confidence": finding.confidence_score,
                    "citations": numbers,
                }
            )
        lead = [
            f"{item['statement'].rstrip('.')}. "
            + " ".join(f"[{n}]" for n in item["citations"])
            for item in statements[:3]
        ]
        return {
            "summary": " ".join(lead).strip(),
            "findings": statements,
            "contradictions": [],
            "gaps": [],
        }

    @staticmethod
    def _parse_findings(raw: object, source_count: int) -> list[SynthesizedFinding]:
        parsed: list[SynthesizedFinding] = []
        if not isinstance(raw, list):
            return parsed
        for item in raw:
            if not isinstance(item, dict):
                continue
            statement = str(item.get("statement", "")).strip()
            if not statement:
                continue
            numbers = item.get("citations")
            cited = sorted(
                {
                    int(n)
                    for n in (numbers if isinstance(numbers, list) else [])
                    if isinstance(n, int | float) and 1 <= int(n) <= source_count
                }
            )
            if not cited:
                cited = sorted(set(valid_markers(statement, source_count)))
            try:
                confidence = max(0.0, min(1.0, float(item.get("confidence", 0.5))))
            except (TypeError, ValueError):
                confidence = 0.5
            parsed.append(
                SynthesizedFinding(statement=statement, confidence=confidence, citations=cited)
            )
        return parsed

    async def aggregate(
        self,
        query: str,
        results: list[SubagentResult],
        *,
        trace_id: str,
    ) -> AggregatedAnswer:
        failed = [result for result in results if not result.success]
        gaps = [f"No results from {result.source_name}." for result in failed]

        if results and len(failed) == len(results):
            answer = AggregatedAnswer(
                summary=NO_SOURCES_SUMMARY,
                findings=[],
                contradictions=[],
                gaps=gaps,
                sources=[],
                quality_score=0.0,
                low_quality=True,
            )
            self._emit(trace_id, answer, results, selected=0)
            return answer

        findings = self.select(query, results)
        if not findings:
            answer = AggregatedAnswer(
                summary=NO_FINDINGS_SUMMARY,
                findings=[],
                contradictions=[],
                gaps=[*gaps, f"No source covered: {query}"],
                sources=[],
                quality_score=0.0,
                low_quality=True,
            )
            self._emit(trace_id, answer, results, selected=0)
            return answer

        citations = CitationRegistry()
        prompt = self._grouped_prompt(query, findings, citations)
        payload = await self._synthesize(prompt)
        synthesized_by_model = payload is not None
        if payload is None:
            payload = self._fallback(findings, citations)

        source_count = len(citations)
        synthesized = self._parse_findings(payload.get("findings"), source_count)
        summary = str(payload.get("summary", "")).strip()
        cited_flags = [bool(item.citations) for item in synthesized] or [
            bool(valid_markers(summary, source_count))
        ]
        score = quality_score(query, summary, cited_flags)
        answer = AggregatedAnswer(
            summary=summary,
            findings=synthesized,
            contradictions=_string_list(payload.get("contradictions")),
            gaps=[*gaps, *_string_list(payload.get("gaps"))],
            sources=citations.sources,
            quality_score=score,
            low_quality=score < self.low_quality_threshold,
        )
        self._emit(
            trace_id,
            answer,
            results,
            selected=len(findings),
            synthesized_by_model=synthesized_by_model,
        )
        return answer

    def _emit(
        self,
        trace_id: str,
        answer: AggregatedAnswer,
        results: list[SubagentResult],
        **extra: object,
    ) -> None:
        emit_event(
            self.sink,
            EventInput(
                trace_id=trace_id,
                span_id=new_id("spn"),
                parent_span_id=None,
                event_type="research.aggregate",
                component="research",
                payload={
                    "tasks": len(results),
                    "failed_tasks": sum(1 for r in results if not r.success),
                    "findings": len(answer.findings),
                    "sources": len(answer.sources),
                    "contradictions": len(answer.contradictions),
                    "gaps": len(answer.gaps),
                    "quality_score": answer.quality_score,
                    "low_quality": answer.low_quality,
                    **extra,
                },
            ),
        )


def render_answer(answer: AggregatedAnswer) -> str:
    """Plain-text rendering handed back to the main loop as one tool result."""
    parts: list[str] = []
    if answer.low_quality and answer.findings:
        parts.append(LOW_QUALITY_DISCLAIMER)
    parts.append(answer.summary)
    if answer.findings:
        lines = ["Findings:"]
        for item in answer.findings:
            refs = " ".join(f"[{n}]" for n in item.citations) or "(uncited)"
            lines.append(f"- {item.statement} {refs} (confidence {item.confidence:.2f})")
        parts.append("\n".join(lines))
    if answer.contradictions:
        parts.append("Contradictions:\n" + "\n".join(f"- {c}" for c in answer.contradictions))
    if answer.gaps:
        parts.append("Gaps:\n" + "\n".join(f"- {g}" for g in answer.gaps))
    if answer.sources:
        parts.append("Sources:\n" + render_sources(answer.sources))
    parts.append(f"Quality score: {answer.quality_score:.2f}")
    return "\n\n".join(parts)
