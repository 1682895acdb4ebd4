"""Agent loop: model call, tool rounds, compaction, hard caps."""

import asyncio
import logging
import time
from collections.abc import Callable, Collection
from typing import Any

from orion.config import Settings, get_settings
from orion.errors import LoopIterationLimitExceeded, LoopTimeExceeded, ProviderError
from orion.events.writer import EventSink, span
from orion.ids import new_trace_id
from orion.logging import bind_context
from orion.memory.store import SafeMemory, load_preferences
from orion.orchestrator.compaction import (
    Compactor,
    estimate_turn_tokens,
    resolve_budget,
    should_compact,
)
from orion.orchestrator.prompt_builder import build_system_prompt
from orion.orchestrator.types import AgentReply, ConversationTurn, LoopState, Transcript
from orion.orchestrator.verification import revision_feedback, verify_answer
from orion.providers.base import ModelResponse
from orion.providers.router import ProviderRouter
from orion.tools.runtime import ToolRuntime, describe_failure, format_result_for_model
from orion.tools.types import LOCAL_SERVER_ID, ToolCallRequest, ToolCallResult

logger = logging.getLogger(__name__)

DEGRADED_RESPONSE = (
    "I ran into a problem reaching the language model while working on that. "
    "Please try again in a moment."
)
ITERATION_LIMIT_RESPONSE = (
    "I stopped before finishing because this request needed more tool steps than I am "
    "allowed in one turn."
)
TIME_LIMIT_RESPONSE = (
    "I stopped before finishing because this request took longer than the time I am "
    "allowed for one turn."
)
EMPTY_RESPONSE = "I could not produce an answer for that. Could you rephrase the request?"
MIN_COMPACTION_SECONDS = 1.0

_CONTROL_MARKERS = (
    "<|start|>",
    "<|channel|>",
    "<|message|>",
    "<|analysis|>",
    "<|final|>",
    "<|call|>",
)


def _strip_control_tokens(text: str) -> str:
    """Remove LLM control tokens that should never reach the user."""
    cleaned = text.replace("<|end|>", "").strip()
    first_marker: int | None = None
    for marker in _CONTROL_MARKERS:
        idx = cleaned.find(marker)
        if idx == -1:
            continue
        first_marker = idx if first_marker is None else min(first_marker, idx)
    if first_marker is not None:
        cleaned = cleaned[:first_marker].strip()
    return cleaned


def _normalize_tool_calls(tool_calls_raw: object) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []
    if not isinstance(tool_calls_raw, list):
        return calls
    for item in tool_calls_raw:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        arguments = item.get("arguments", {})
        if not isinstance(name, str) or not name.strip():
            continue
        calls.append(
            {
                "name": name.strip(),
                "arguments": arguments if isinstance(arguments, dict) else {},
            }
        )
    return calls


def _tool_result_turn(results: list[ToolCallResult]) -> ConversationTurn:
    blocks: list[str] = []
    for result in results:
        status = "ok" if result.ok else result.outcome
        blocks.append(
            f"[tool result: {result.server_id}/{result.tool_name} ({status})]\n"
            f"{format_result_for_model(result)}"
        )
    return ConversationTurn(role="user", content="\n\n".join(blocks), kind="tool_result")


def _unresolved_failures(results: list[ToolCallResult]) -> list[ToolCallResult]:
    """Failures whose tool never succeeded later in the same turn."""
    succeeded = {(r.server_id, r.tool_name) for r in results if r.ok}
    seen: set[tuple[str, str]] = set()
    failures: list[ToolCallResult] = []
    for result in results:
        key = (result.server_id, result.tool_name)
        if result.ok or key in succeeded or key in seen:
            continue
        seen.add(key)
        failures.append(result)
    return failures


class AgentLoop:
    """One conversation session.

    The loop owns its transcript; ``run`` holds a lock so two turns of the
    same session never interleave. Subagents build their own reduced loops
    with a private transcript and a narrower tool scope.
    """

    def __init__(
        self,
        router: ProviderRouter,
        runtime: ToolRuntime,
        *,
        compactor: Compactor | None = None,
        settings: Settings | None = None,
        sink: EventSink | None = None,
        memory: SafeMemory | None = None,
        user_id: str | None = None,
        system_context: str = "",
        tool_servers: Collection[str] | None = None,
        include_static_tools: bool = True,
        max_iterations: int | None = None,
        max_seconds: float | None = None,
        verify: bool = True,
        transcript: Transcript | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.router = router
        self.runtime = runtime
        self.compactor = compactor
        self.sink = sink
        self.memory = memory or SafeMemory(None)
        self.user_id = user_id
        self.system_context = system_context
        self.tool_servers = None if tool_servers is None else frozenset(tool_servers)
        self.include_static_tools = include_static_tools
        self.max_iterations = max_iterations or self.settings.loop_max_iterations
        self.max_seconds = max_seconds or self.settings.loop_max_seconds
        self.verify = verify
        self.transcript = transcript or Transcript()
        self.state = LoopState.DONE
        self._clock = clock
        self._lock = asyncio.Lock()

    def _tool_schemas(self) -> list[dict[str, object]]:
        return self.runtime.registry.schemas(
            self.tool_servers, include_static=self.include_static_tools
        )

    def _request_for(self, call: dict[str, Any]) -> ToolCallRequest:
        name = call["name"]
        route = self.runtime.registry.resolve(name)
        allowed = route is not None and (
            (route.server_id == LOCAL_SERVER_ID and self.include_static_tools)
            or (
                route.server_id != LOCAL_SERVER_ID
                and (self.tool_servers is None or route.server_id in self.tool_servers)
            )
        )
        if route is None or not allowed:
            # No client is registered under "", so the runtime answers invalid_input.
            return ToolCallRequest(tool_name=name, server_id="", arguments=call["arguments"])
        return ToolCallRequest(
            tool_name=route.tool_name, server_id=route.server_id, arguments=call["arguments"]
        )

    async def _discover_tools(self, deadline: float) -> None:
        """Refresh server tool lists within the turn budget; keep cached tools on timeout."""
        remaining = deadline - self._clock()
        if remaining <= 0:
            return
        try:
            async with asyncio.timeout(remaining):
                await self.runtime.registry.discover(
                    self.runtime.health, server_ids=self.tool_servers
                )
        except TimeoutError:
            logger.warning("Tool discovery hit the turn deadline, using cached tool lists")

    async def _maybe_compact(self, system_prompt: str, trace_id: str, deadline: float) -> bool:
        if self.compactor is None:
            return False
        estimated = estimate_turn_tokens(self.transcript.turns, system_prompt=system_prompt)
        budget = resolve_budget(self.settings.context_budget_tokens)
        if not should_compact(estimated, budget, self.settings.compaction_threshold):
            return False
        remaining = deadline - self._clock()
        if remaining < MIN_COMPACTION_SECONDS:
            logger.info("Skipping compaction, %.2fs left in turn", remaining)
            return False
        result = await self.compactor.compact(
            self.transcript.turns,
            max(1, self.settings.compaction_keep_last_n),
            self.settings.compaction_max_summary_tokens,
            trace_id=trace_id,
            timeout_seconds=remaining,
        )
        if result.compaction_applied:
            self.transcript.replace(result.turns)
        return result.compaction_applied

    async def _call_model(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, object]] | None,
        *,
        deadline: float,
        trace_id: str,
        parent_span_id: str,
    ) -> ModelResponse:
        async with span(
            self.sink,
            "model.run",
            trace_id=trace_id,
            component="orchestrator",
            parent_span_id=parent_span_id,
            message_count=len(messages),
            tool_count=len(tools or []),
        ) as model_span:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise TimeoutError("turn deadline reached before model call")
            async with asyncio.timeout(remaining):
                response, lane, primary_error = await self.router.generate(
                    messages,
                    tools or None,
                    self.settings.model_temperature,
                    self.settings.model_max_tokens,
                )
            model_span.end_payload.update(
                {
                    "lane": lane,
                    "primary_error": primary_error,
                    "stop_reason": response.stop_reason,
                    "tool_calls": len(response.tool_calls),
                    "usage": {
                        "input": response.usage.input_tokens,
                        "output": response.usage.output_tokens,
                    },
                }
            )
            return response

    async def run(
        self,
        user_message: str,
        *,
        trace_id: str | None = None,
        deadline: float | None = None,
        parent_span_id: str | None = None,
    ) -> AgentReply:
        trace = trace_id or new_trace_id()
        async with self._lock:
            # Budget starts when the turn owns the session.
            turn_deadline = self._clock() + self.max_seconds
            if deadline is not None:
                turn_deadline = min(turn_deadline, deadline)
            bind_context(trace_id=trace)
            async with span(
                self.sink,
                "agent.loop",
                trace_id=trace,
                component="orchestrator",
                parent_span_id=parent_span_id,
                turn_count=len(self.transcript),
            ) as loop_span:
                reply = await self._run(
                    user_message, trace_id=trace, deadline=turn_deadline, span_id=loop_span.span_id
                )
                loop_span.end_payload.update(
                    {
                        "iterations": reply.iterations,
                        "stop_reason": reply.stop_reason,
                        "degraded": reply.degraded,
                        "compaction_applied": reply.compaction_applied,
                        "tool_calls": len(reply.tool_results),
                    }
                )
                return reply

    async def _run(
        self, user_message: str, *, trace_id: str, deadline: float, span_id: str
    ) -> AgentReply:
        self.transcript.append(ConversationTurn(role="user", content=user_message))
        preferences = await load_preferences(self.memory, self.user_id)
        await self._discover_tools(deadline)

        tool_results: list[ToolCallResult] = []
        compaction_applied = False
        iterations = 0
        response: ModelResponse | None = None
        pending_calls: list[dict[str, Any]] = []
        self.state = LoopState.AWAITING_MODEL

        def _finish(text: str, stop_reason: str, *, degraded: bool = False) -> AgentReply:
            self.state = LoopState.DONE
            self.transcript.append(ConversationTurn(role="assistant", content=text))
            return AgentReply(
                text=text,
                state=self.state,
                iterations=iterations,
                stop_reason=stop_reason,
                trace_id=trace_id,
                tool_results=tool_results,
                compaction_applied=compaction_applied,
                degraded=degraded,
            )

        while True:
            if self.state is LoopState.AWAITING_MODEL:
                if self._clock() >= deadline:
                    return self._limit_reply(_finish, LoopTimeExceeded, response, tool_results)
                tools = self._tool_schemas()
                system_prompt = build_system_prompt(
                    self.system_context, tools=tools, preferences=preferences
                )
                if await self._maybe_compact(system_prompt, trace_id, deadline):
                    compaction_applied = True
                messages = [
                    {"role": "system", "content": system_prompt},
                    *self.transcript.messages(),
                ]
                try:
                    response = await self._call_model(
                        messages,
                        tools,
                        deadline=deadline,
                        trace_id=trace_id,
                        parent_span_id=span_id,
                    )
                except TimeoutError:
                    return self._limit_reply(_finish, LoopTimeExceeded, response, tool_results)
                except ProviderError as exc:
                    logger.warning("Model call failed trace=%s error=%s", trace_id, exc)
                    return _finish(DEGRADED_RESPONSE, "provider_error", degraded=True)
                self.state = LoopState.MODEL_RESPONDED

            elif self.state is LoopState.MODEL_RESPONDED and response is not None:
                pending_calls = _normalize_tool_calls(response.tool_calls)
                if pending_calls:
                    if iterations >= self.max_iterations:
                        return self._limit_reply(
                            _finish, LoopIterationLimitExceeded, response, tool_results
                        )
                    self.state = LoopState.EXECUTING_TOOLS
                    continue
                answer, verification = await self._final_text(
                    response,
                    user_message,
                    tool_results,
                    deadline=deadline,
                    trace_id=trace_id,
                    span_id=span_id,
                )
                reply = _finish(answer, response.stop_reason)
                reply.verification = verification
                return reply

            elif self.state is LoopState.EXECUTING_TOOLS:
                iterations += 1
                requests = [self._request_for(call) for call in pending_calls]
                results = await self.runtime.execute_many(
                    requests, trace_id=trace_id, parent_span_id=span_id, deadline=deadline
                )
                tool_results.extend(results)
                self.transcript.append(_tool_result_turn(results))
                self.state = LoopState.AWAITING_MODEL

    def _limit_reply(
        self,
        finish: Callable[..., AgentReply],
        reason: type[LoopIterationLimitExceeded] | type[LoopTimeExceeded],
        response: ModelResponse | None,
        tool_results: list[ToolCallResult],
    ) -> AgentReply:
        if reason is LoopIterationLimitExceeded:
            base = ITERATION_LIMIT_RESPONSE
        else:
            base = TIME_LIMIT_RESPONSE
        logger.warning("Agent loop stopped early reason=%s", reason.__name__)
        partial = _strip_control_tokens(response.text) if response is not None else ""
        parts = [base]
        if partial:
            parts.append(f"Here is what I had so far:\n{partial}")
        note = self._failure_note(tool_results)
        if note:
            parts.append(note)
        return finish("\n\n".join(parts), reason.__name__, degraded=True)

    @staticmethod
    def _failure_note(tool_results: list[ToolCallResult]) -> str:
        failures = _unresolved_failures(tool_results)
        if not failures:
            return ""
        described = " ".join(describe_failure(result) for result in failures[:3])
        return f"Note: {described} This answer may be incomplete."

    async def _final_text(
        self,
        response: ModelResponse,
        user_message: str,
        tool_results: list[ToolCallResult],
        *,
        deadline: float,
        trace_id: str,
        span_id: str,
    ) -> tuple[str, dict[str, object]]:
        answer = _strip_control_tokens(response.text) or EMPTY_RESPONSE
        if not self.verify:
            return answer, {}
        expects_citations = any(r.ok and r.tool_name == "research" for r in tool_results)
        result = verify_answer(answer, user_message, expects_citations=expects_citations)
        if not result.passed and deadline - self._clock() > 1:
            logger.info("Answer failed verification, revising issues=%s", result.issues)
            messages = [
                *self.transcript.messages(),
                {"role": "assistant", "content": answer},
                {"role": "user", "content": revision_feedback(result)},
            ]
            try:
                revised = await self._call_model(
                    messages, None, deadline=deadline, trace_id=trace_id, parent_span_id=span_id
                )
            except (TimeoutError, ProviderError) as exc:
                logger.warning("Revision call failed error=%s", exc)
            else:
                revised_text = _strip_control_tokens(revised.text)
                revised_result = verify_answer(
                    revised_text, user_message, expects_citations=expects_citations
                )
                if revised_text and len(revised_result.errors) <= len(result.errors):
                    answer, result = revised_text, revised_result
        note = self._failure_note(tool_results)
        if note and "unavailable" not in answer.lower() and "did not respond" not in answer.lower():
            answer = f"{answer}\n\n{note}"
        return answer, result.as_dict()
