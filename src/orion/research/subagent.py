"""One research subagent: a reduced agent loop scoped to a single source."""

import asyncio
import json
import logging
import time
from typing import Any

from orion.config import Settings, get_settings
from orion.errors import SubagentTaskFailed
from orion.events.writer import EventSink
from orion.orchestrator.loop import AgentLoop
from orion.providers.router import ProviderRouter
from orion.research.knowledge import KnowledgeSource
from orion.research.scoring import KeywordOverlapScorer, RelevanceScorer
from orion.research.types import Finding, SubagentResult, SubagentTask
from orion.tools.runtime import ToolRuntime

logger = logging.getLogger(__name__)

SUBAGENT_INSTRUCTIONS = """You are a research subagent. You have access to exactly one \
information source: {source}. Use its tools to gather facts that answer the question, \
then reply with JSON only, no prose:

{{"findings": [{{"content": "<one self-contained fact>", \
"citations": ["<url, document or tool that backs it>"], "confidence": 0.0-1.0}}]}}

Return at most {max_findings} findings. If the source has nothing relevant, return \
{{"findings": []}}."""


def _extract_json_object(text: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _end = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            return obj
        idx = text.find("{", idx + 1)
    return None


def _clamp(value: object, default: float) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(0.0, min(1.0, number))


class SubagentRunner:
    def __init__(
        self,
        router: ProviderRouter,
        runtime: ToolRuntime,
        *,
        settings: Settings | None = None,
        sink: EventSink | None = None,
        knowledge: KnowledgeSource | None = None,
        scorer: RelevanceScorer | None = None,
        max_findings: int = 6,
    ) -> None:
        self.settings = settings or get_settings()
        self.router = router
        self.runtime = runtime
        self.sink = sink
        self.knowledge = knowledge
        self.scorer = scorer or KeywordOverlapScorer()
        self.max_findings = max_findings

    async def run(
        self,
        task: SubagentTask,
        *,
        trace_id: str,
        parent_span_id: str | None = None,
    ) -> SubagentResult:
        started = time.perf_counter()
        if task.source_kind == "knowledge":
            findings = await self._search_knowledge(task)
        else:
            findings = await self._run_loop(task, trace_id=trace_id, parent_span_id=parent_span_id)
        return SubagentResult(
            task_id=task.id,
            source_kind=task.source_kind,
            source_name=task.source_name,
            success=True,
            findings=findings,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _search_knowledge(self, task: SubagentTask) -> list[Finding]:
        if self.knowledge is None or not self.knowledge.available:
            raise SubagentTaskFailed("local knowledge directory is not available")
        hits = await asyncio.to_thread(self.knowledge.search, task.query, limit=self.max_findings)
        return [
            Finding(
                content=hit.excerpt,
                source_citations=[f"knowledge:{hit.path}"],
                relevance_score=hit.score,
                confidence_score=0.7,
                source_kind="knowledge",
                source_name=task.source_name,
            )
            for hit in hits
            if hit.excerpt
        ]

    def _instructions(self, task: SubagentTask) -> str:
        text = SUBAGENT_INSTRUCTIONS.format(
            source=task.source_name, max_findings=self.max_findings
        )
        return f"{text}\n\n{task.instructions}" if task.instructions else text

    async def _run_loop(
        self, task: SubagentTask, *, trace_id: str, parent_span_id: str | None
    ) -> list[Finding]:
        loop = AgentLoop(
            self.router,
            self.runtime,
            settings=self.settings,
            sink=self.sink,
            system_context=self._instructions(task),
            tool_servers=[task.source_name],
            include_static_tools=False,
            max_iterations=self.settings.research_max_iterations,
            max_seconds=task.timeout_ms / 1000,
            verify=False,
        )
        reply = await loop.run(task.query, trace_id=trace_id, parent_span_id=parent_span_id)
        if reply.degraded:
            raise SubagentTaskFailed(f"subagent stopped early: {reply.stop_reason}")
        used_tools = [
            f"{result.server_id}/{result.tool_name}" for result in reply.tool_results if result.ok
        ]
        if not used_tools and any(not result.ok for result in reply.tool_results):
            raise SubagentTaskFailed(f"every tool call to {task.source_name} failed")
        return self._parse_findings(task, reply.text, used_tools)

    def _parse_findings(
        self, task: SubagentTask, text: str, used_tools: list[str]
    ) -> list[Finding]:
        fallback_citations = used_tools[:3] or [task.source_name]
        payload = _extract_json_object(text)
        raw_findings = payload.get("findings") if payload is not None else None
        findings: list[Finding] = []
        if isinstance(raw_findings, list):
            for item in raw_findings[: self.max_findings]:
                if not isinstance(item, dict):
                    continue
                content = str(item.get("content", "")).strip()
                if not content:
                    continue
                citations = item.get("citations")
                citation_list = (
                    [str(c).strip() for c in citations if str(c).strip()]
                    if isinstance(citations, list)
                    else []
                )
                findings.append(
                    Finding(
                        content=content,
                        source_citations=citation_list or fallback_citations,
                        relevance_score=self.scorer.score(task.query, content),
                        confidence_score=_clamp(item.get("confidence"), 0.5),
                        source_kind=task.source_kind,
                        source_name=task.source_name,
                    )
                )
            return findings
        cleaned = text.strip()
        if not cleaned:
            return []
        logger.info("Subagent returned prose instead of JSON source=%s", task.source_name)
        return [
            Finding(
                content=cleaned,
                source_citations=fallback_citations,
                relevance_score=self.scorer.score(task.query, cleaned),
                confidence_score=0.4,
                source_kind=task.source_kind,
                source_name=task.source_name,
            )
        ]
