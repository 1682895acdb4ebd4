"""The ``research`` tool: plan subagents per source, run them, merge the result."""

import logging
from typing import Any

from orion.config import Settings, get_settings
from orion.errors import ToolInvalidInput
from orion.ids import new_trace_id
from orion.logging import current_span_id, current_trace_id
from orion.research.aggregate import Aggregator, render_answer
from orion.research.knowledge import KnowledgeSource
from orion.research.orchestrator import ResearchOrchestrator
from orion.research.types import SubagentTask
from orion.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

RESEARCH_TOOL_NAME = "research"
RESEARCH_DESCRIPTION = (
    "Research a broad question across every available source in parallel and return "
    "one synthesized answer with numbered citations."
)
RESEARCH_PARAMETERS: dict[str, object] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "The full research question."},
        "focus": {
            "type": "string",
            "description": "Optional extra guidance for every source (e.g. time range).",
        },
    },
    "required": ["query"],
}


class ResearchTool:
    def __init__(
        self,
        orchestrator: ResearchOrchestrator,
        aggregator: Aggregator,
        registry: ToolRegistry,
        *,
        knowledge: KnowledgeSource | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.orchestrator = orchestrator
        self.aggregator = aggregator
        self.registry = registry
        self.knowledge = knowledge

    def plan(self, query: str, focus: str = "") -> list[SubagentTask]:
        timeout_ms = int(self.settings.research_task_timeout_seconds * 1000)
        tasks: list[SubagentTask] = []
        for server_id in self.registry.server_ids():
            if not self.registry.server_tools(server_id):
                continue
            tasks.append(
                SubagentTask(
                    source_kind="tool_server",
                    source_name=server_id,
                    query=query,
                    instructions=focus,
                    timeout_ms=timeout_ms,
                )
            )
        if self.knowledge is not None and self.knowledge.available:
            tasks.append(
                SubagentTask(
                    source_kind="knowledge",
                    source_name="knowledge",
                    query=query,
                    instructions=focus,
                    timeout_ms=timeout_ms,
                )
            )
        return tasks

    async def __call__(self, arguments: dict[str, Any]) -> str:
        query = str(arguments.get("query", "")).strip()
        if not query:
            raise ToolInvalidInput("research requires a non-empty query")
        focus = str(arguments.get("focus", "")).strip()
        trace_id = current_trace_id() or new_trace_id()
        tasks = self.plan(query, focus)
        if not tasks:
            return "No research sources are configured, so no research could be done."
        logger.info("Research started sources=%s", ",".join(t.source_name for t in tasks))
        results = await self.orchestrator.run_parallel(
            tasks, trace_id=trace_id, parent_span_id=current_span_id()
        )
        answer = await self.aggregator.aggregate(query, results, trace_id=trace_id)
        return render_answer(answer)

    def register(self) -> None:
        # Subagents run in parallel, so one task timeout plus synthesis bounds the call.
        self.registry.register(
            RESEARCH_TOOL_NAME,
            RESEARCH_DESCRIPTION,
            self,
            RESEARCH_PARAMETERS,
            timeout_seconds=self.settings.research_task_timeout_seconds
            + self.aggregator.synthesis_timeout_seconds
            + 5,
        )
