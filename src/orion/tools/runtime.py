"""Tool runtime: bounded, retried, health-aware tool execution."""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from orion.errors import ToolError
from orion.events.models import EventInput
from orion.events.writer import EventSink, emit_event, span
from orion.ids import new_id
from orion.logging import bound_context
from orion.tools.health import HealthRegistry
from orion.tools.registry import ToolRegistry
from orion.tools.retry import RetryPolicy
from orion.tools.types import LOCAL_SERVER_ID, ToolCallRequest, ToolCallResult, ToolOutcome

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_PAYLOAD_CHARS = 20000

Sleep = Callable[[float], Awaitable[None]]


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class ToolRuntime:
    def __init__(
        self,
        registry: ToolRegistry,
        health: HealthRegistry,
        *,
        retry: RetryPolicy | None = None,
        sink: EventSink | None = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.health = health
        self.retry = retry or RetryPolicy()
        self.sink = sink
        self.default_timeout_seconds = default_timeout_seconds
        self._sleep = sleep

    def _emit(
        self,
        event_type: str,
        *,
        trace_id: str,
        parent_span_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        emit_event(
            self.sink,
            EventInput(
                trace_id=trace_id,
                span_id=new_id("spn"),
                parent_span_id=parent_span_id,
                event_type=event_type,
                component="tools.runtime",
                payload=payload,
            ),
        )

    def _timeout_for(self, request: ToolCallRequest, timeout_seconds: float | None) -> float:
        if timeout_seconds is not None:
            return timeout_seconds
        if request.server_id == LOCAL_SERVER_ID:
            tool = self.registry.get(request.tool_name)
            if tool is not None and tool.timeout_seconds:
                return tool.timeout_seconds
            return self.default_timeout_seconds
        client = self.registry.client(request.server_id)
        if client is not None:
            return client.call_timeout_seconds
        return self.default_timeout_seconds

    async def _invoke(self, request: ToolCallRequest, timeout_seconds: float) -> ToolOutcome:
        if request.server_id == LOCAL_SERVER_ID:
            tool = self.registry.get(request.tool_name)
            if tool is None:
                return ToolOutcome.fail(
                    "invalid_input", f"unknown tool: {request.tool_name}", retryable=False
                )
            try:
                return ToolOutcome.ok(await tool.handler(request.arguments))
            except ToolError as exc:
                return ToolOutcome.from_error(exc)
            except Exception as exc:
                logger.exception("Static tool failed tool=%s", request.tool_name)
                return ToolOutcome.fail(
                    "execution_failed", f"{type(exc).__name__}: {exc}", retryable=False
                )
        client = self.registry.client(request.server_id)
        if client is None:
            return ToolOutcome.fail(
                "invalid_input", f"unknown tool: {request.tool_name}", retryable=False
            )
        return await client.call_tool(
            request.tool_name, request.arguments, timeout_seconds=timeout_seconds
        )

    async def _record_failure(
        self,
        request: ToolCallRequest,
        error: str,
        *,
        trace_id: str,
        parent_span_id: str | None,
    ) -> None:
        if request.server_id == LOCAL_SERVER_ID:
            return
        state, degraded = await self.health.record_failure(request.server_id, error)
        if degraded:
            logger.warning(
                "Tool server degraded server=%s failures=%s",
                request.server_id,
                state.consecutive_failures,
            )
            self._emit(
                "tool.health.degraded",
                trace_id=trace_id,
                parent_span_id=parent_span_id,
                payload={
                    "server": request.server_id,
                    "consecutive_failures": state.consecutive_failures,
                    "last_error": state.last_error,
                },
            )

    async def _record_success(
        self, request: ToolCallRequest, *, trace_id: str, parent_span_id: str | None
    ) -> None:
        if request.server_id == LOCAL_SERVER_ID:
            return
        _, recovered = await self.health.record_success(request.server_id)
        if recovered:
            logger.info("Tool server recovered server=%s", request.server_id)
            self._emit(
                "tool.health.recovered",
                trace_id=trace_id,
                parent_span_id=parent_span_id,
                payload={"server": request.server_id},
            )

    async def execute(
        self,
        request: ToolCallRequest,
        *,
        trace_id: str,
        parent_span_id: str | None = None,
        timeout_seconds: float | None = None,
        deadline: float | None = None,
    ) -> ToolCallResult:
        """Run one request to exactly one result. Never raises for tool failures.

        ``deadline`` is a ``time.monotonic()`` instant; attempts and backoff
        are clipped so the call finishes by then.
        """
        base = {
            "call_id": request.call_id,
            "server": request.server_id,
            "tool": request.tool_name,
        }
        async with span(
            self.sink,
            "tool.call",
            trace_id=trace_id,
            component="tools.runtime",
            parent_span_id=parent_span_id,
            **base,
        ) as call_span:
            with bound_context(span_id=call_span.span_id):
                result = await self._execute(
                    request,
                    trace_id=trace_id,
                    span_id=call_span.span_id,
                    timeout_seconds=self._timeout_for(request, timeout_seconds),
                    deadline=deadline,
                )
            call_span.end_payload.update(
                {
                    "result": result.outcome,
                    "retry_count": result.retry_count,
                    "error_kind": result.error_kind,
                }
            )
            return result

    async def _execute(
        self,
        request: ToolCallRequest,
        *,
        trace_id: str,
        span_id: str,
        timeout_seconds: float,
        deadline: float | None,
    ) -> ToolCallResult:
        started = time.perf_counter()
        base = {
            "call_id": request.call_id,
            "server": request.server_id,
            "tool": request.tool_name,
        }

        def _result(outcome: str, attempt: int, **fields: Any) -> ToolCallResult:
            return ToolCallResult(
                call_id=request.call_id,
                tool_name=request.tool_name,
                server_id=request.server_id,
                outcome=outcome,  # type: ignore[arg-type]
                duration_ms=_elapsed_ms(started),
                retry_count=max(0, attempt - 1),
                **fields,
            )

        if request.server_id != LOCAL_SERVER_ID and await self.health.should_skip(
            request.server_id
        ):
            self._emit(
                "tool.call.skipped",
                trace_id=trace_id,
                parent_span_id=span_id,
                payload={**base, "reason": "server_degraded"},
            )
            return _result(
                "error",
                0,
                error_kind="unavailable",
                error_detail=f"{request.server_id} is temporarily unavailable",
            )

        attempt = 0
        outcome = ToolOutcome.fail("unavailable", "not attempted", retryable=True)
        while True:
            attempt += 1
            attempt_timeout = timeout_seconds
            if deadline is not None:
                attempt_timeout = min(attempt_timeout, deadline - time.monotonic())
            if attempt_timeout <= 0:
                await self._record_failure(
                    request, "deadline exceeded", trace_id=trace_id, parent_span_id=span_id
                )
                return _result(
                    "timeout", attempt, error_kind="unavailable", error_detail="deadline exceeded"
                )

            self._emit(
                "tool.call.attempt",
                trace_id=trace_id,
                parent_span_id=span_id,
                payload={**base, "attempt": attempt, "arguments": request.arguments},
            )
            attempt_started = time.perf_counter()
            try:
                async with asyncio.timeout(attempt_timeout):
                    outcome = await self._invoke(request, attempt_timeout)
            except TimeoutError:
                detail = f"no response within {attempt_timeout:.1f}s"
                self._emit(
                    "tool.call.failure",
                    trace_id=trace_id,
                    parent_span_id=span_id,
                    payload={
                        **base,
                        "attempt": attempt,
                        "outcome": "timeout",
                        "duration_ms": _elapsed_ms(attempt_started),
                    },
                )
                await self._record_failure(
                    request, detail, trace_id=trace_id, parent_span_id=span_id
                )
                return _result("timeout", attempt, error_kind="unavailable", error_detail=detail)

            if outcome.success:
                self._emit(
                    "tool.call.success",
                    trace_id=trace_id,
                    parent_span_id=span_id,
                    payload={
                        **base,
                        "attempt": attempt,
                        "outcome": "success",
                        "duration_ms": _elapsed_ms(attempt_started),
                    },
                )
                await self._record_success(request, trace_id=trace_id, parent_span_id=span_id)
                return _result("success", attempt, payload=outcome.data)

            self._emit(
                "tool.call.failure",
                trace_id=trace_id,
                parent_span_id=span_id,
                payload={
                    **base,
                    "attempt": attempt,
                    "outcome": "error",
                    "error_kind": outcome.error_kind,
                    "retryable": outcome.retryable,
                    "duration_ms": _elapsed_ms(attempt_started),
                },
            )
            if not self.retry.should_retry(outcome, attempt):
                break
            delay = self.retry.delay_for(attempt)
            if deadline is not None and time.monotonic() + delay >= deadline:
                break
            logger.info(
                "Retrying tool call tool=%s server=%s attempt=%s delay=%.2fs",
                request.tool_name,
                request.server_id,
                attempt,
                delay,
            )
            await self._sleep(delay)

        # invalid_input never counts against server health.
        if outcome.error_kind != "invalid_input":
            await self._record_failure(
                request, outcome.error_message, trace_id=trace_id, parent_span_id=span_id
            )
        return _result(
            "error",
            attempt,
            error_kind=outcome.error_kind,
            error_detail=outcome.error_message,
        )

    async def execute_many(
        self,
        requests: list[ToolCallRequest],
        *,
        trace_id: str,
        parent_span_id: str | None = None,
        deadline: float | None = None,
    ) -> list[ToolCallResult]:
        """Run independent requests concurrently; one result per request, in order."""
        if not requests:
            return []
        gathered = await asyncio.gather(
            *(
                self.execute(
                    request, trace_id=trace_id, parent_span_id=parent_span_id, deadline=deadline
                )
                for request in requests
            ),
            return_exceptions=True,
        )
        results: list[ToolCallResult] = []
        for request, item in zip(requests, gathered, strict=True):
            if isinstance(item, ToolCallResult):
                results.append(item)
                continue
            if isinstance(item, asyncio.CancelledError):
                raise item
            logger.error(
                "Tool execution raised unexpectedly tool=%s error=%s", request.tool_name, item
            )
            results.append(
                ToolCallResult(
                    call_id=request.call_id,
                    tool_name=request.tool_name,
                    server_id=request.server_id,
                    outcome="error",
                    error_kind="execution_failed",
                    error_detail=f"{type(item).__name__}: {item}",
                )
            )
        return results


def _payload_text(payload: Any) -> str:
    if isinstance(payload, str):
        text = payload
    else:
        try:
            text = json.dumps(payload, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = str(payload)
    if len(text) > MAX_PAYLOAD_CHARS:
        return text[:MAX_PAYLOAD_CHARS] + "\n[...truncated]"
    return text


def describe_failure(result: ToolCallResult) -> str:
    """Short user-safe description; never includes arguments or internals."""
    tool = result.tool_name
    server = result.server_id
    if result.outcome == "timeout":
        return f"The {tool} tool on {server} did not respond in time."
    if result.error_kind == "unavailable":
        return f"The {server} tool server is currently unavailable."
    if result.error_kind == "invalid_input":
        if result.error_detail.startswith("unknown tool"):
            return f"No tool named {tool} is available."
        return f"The {tool} tool rejected the request arguments."
    return f"The {tool} tool on {server} could not complete the request."


def format_result_for_model(result: ToolCallResult) -> str:
    if result.ok:
        return _payload_text(result.payload)
    message = describe_failure(result)
    if result.error_kind == "invalid_input" and not result.error_detail.startswith("unknown tool"):
        message += f" Detail: {result.error_detail[:200]}"
    return f"{message} Continue without this result or try a different approach."
