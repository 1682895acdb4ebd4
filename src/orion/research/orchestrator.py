"""Fan out research subagents and fan their results back in."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from orion.events.writer import EventSink, span
from orion.research.types import SubagentResult, SubagentTask

logger = logging.getLogger(__name__)

TaskRunner = Callable[..., Awaitable[SubagentResult]]


class ResearchOrchestrator:
    """Runs every task concurrently, each under its own timeout.

    Each task gets its own future; a failing or slow task only produces a
    failed ``SubagentResult`` for itself. Results come back in task order.
    """

    def __init__(self, runner: TaskRunner, *, sink: EventSink | None = None) -> None:
        self.runner = runner
        self.sink = sink

    @staticmethod
    def _failed(task: SubagentTask, error: str) -> SubagentResult:
        return SubagentResult(
            task_id=task.id,
            source_kind=task.source_kind,
            source_name=task.source_name,
            success=False,
            error=error,
        )

    async def _run_one(
        self, task: SubagentTask, *, trace_id: str, parent_span_id: str | None
    ) -> SubagentResult:
        async with span(
            self.sink,
            "research.task",
            trace_id=trace_id,
            component="research",
            parent_span_id=parent_span_id,
            task_id=task.id,
            source_kind=task.source_kind,
            source=task.source_name,
        ) as task_span:
            timeout = task.timeout_ms / 1000
            try:
                async with asyncio.timeout(timeout):
                    result = await self.runner(
                        task, trace_id=trace_id, parent_span_id=task_span.span_id
                    )
            except TimeoutError:
                result = self._failed(task, f"timed out after {timeout:.1f}s")
            except Exception as exc:
                logger.warning(
                    "Research task failed source=%s error=%s", task.source_name, exc
                )
                result = self._failed(task, str(exc) or type(exc).__name__)
            if not result.success:
                task_span.outcome = "error"
            task_span.end_payload.update(
                {
                    "success": result.success,
                    "findings": len(result.findings),
                    "error": result.error,
                }
            )
            return result

    async def run_parallel(
        self,
        tasks: list[SubagentTask],
        *,
        trace_id: str,
        parent_span_id: str | None = None,
    ) -> list[SubagentResult]:
        if not tasks:
            return []
        futures = [
            asyncio.create_task(
                self._run_one(task, trace_id=trace_id, parent_span_id=parent_span_id),
                name=f"research:{task.source_name}",
            )
            for task in tasks
        ]
        gathered = await asyncio.gather(*futures, return_exceptions=True)
        results: list[SubagentResult] = []
        for task, item in zip(tasks, gathered, strict=True):
            if isinstance(item, SubagentResult):
                results.append(item)
            elif isinstance(item, asyncio.CancelledError):
                results.append(self._failed(task, "cancelled"))
            else:
                results.append(self._failed(task, f"{type(item).__name__}: {item}"))
        succeeded = sum(1 for result in results if result.success)
        logger.info("Research fan-in complete tasks=%s succeeded=%s", len(tasks), succeeded)
        return results
