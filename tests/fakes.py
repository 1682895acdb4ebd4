"""Scripted providers and tool clients shared by the test suite."""

import asyncio
from collections.abc import Callable
from typing import Any

from orion.providers.base import ModelResponse
from orion.providers.router import ProviderRouter
from orion.tools.client import ToolClient
from orion.tools.types import ToolOutcome, ToolSchema


def text(value: str) -> ModelResponse:
    return ModelResponse(text=value, tool_calls=[])


def tool_use(name: str, arguments: dict[str, Any] | None = None, text: str = "") -> ModelResponse:
    return ModelResponse(
        text=text,
        tool_calls=[{"id": "tu_1", "name": name, "arguments": arguments or {}}],
        stop_reason="tool_use",
    )


def tool_uses(*names: str) -> ModelResponse:
    return ModelResponse(
        text="",
        tool_calls=[
            {"id": f"tu_{i}", "name": name, "arguments": {}} for i, name in enumerate(names)
        ],
        stop_reason="tool_use",
    )


class ScriptedProvider:
    """Returns queued responses in order; exceptions in the queue are raised.

    Once the queue is empty ``default`` is returned (or raised) forever.
    """

    def __init__(self, *responses: Any, default: Any = None, delay: float = 0.0) -> None:
        self.responses = list(responses)
        self.default = default
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def generate(self, messages, tools=None, temperature=0.7, max_tokens=4096):
        self.calls.append({"messages": list(messages), "tools": tools, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.responses.pop(0) if self.responses else self.default
        if item is None:
            item = ModelResponse(text="done", tool_calls=[])
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(messages, tools)
        return item

    async def health_check(self) -> bool:
        return True


def router_for(*responses: Any, default: Any = None, delay: float = 0.0) -> ProviderRouter:
    return ProviderRouter(ScriptedProvider(*responses, default=default, delay=delay))


class FakeToolClient(ToolClient):
    """In-process tool server; ``behaviour`` decides each call's outcome.

    ``behaviour`` receives ``(tool_name, arguments, call_number)`` and returns
    a payload, a ``ToolOutcome``, or raises. ``delays`` maps tool names to
    seconds to sleep before answering.
    """

    transport = "fake"

    def __init__(
        self,
        server_id: str,
        tools: list[str] | None = None,
        behaviour: Callable[[str, dict[str, Any], int], Any] | None = None,
        *,
        delays: dict[str, float] | None = None,
        list_outcome: ToolOutcome | None = None,
        call_timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(server_id, call_timeout_seconds=call_timeout_seconds)
        self.tool_names = tools or ["lookup"]
        self.behaviour = behaviour or (lambda name, args, n: {"tool": name, "args": args})
        self.delays = delays or {}
        self.list_outcome = list_outcome
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.list_calls = 0
        self.closed = False

    async def list_tools(self) -> ToolOutcome:
        self.list_calls += 1
        if self.list_outcome is not None:
            return self.list_outcome
        return ToolOutcome.ok(
            [
                ToolSchema(
                    name=name,
                    description=f"{name} on {self.server_id}",
                    input_schema={"type": "object", "properties": {"q": {"type": "string"}}},
                    server_id=self.server_id,
                )
                for name in self.tool_names
            ]
        )

    async def call_tool(self, name, arguments, *, timeout_seconds=None) -> ToolOutcome:
        self.calls.append((name, arguments))
        delay = self.delays.get(name, 0.0)
        if delay:
            await asyncio.sleep(delay)
        result = self.behaviour(name, arguments, len(self.calls))
        if isinstance(result, ToolOutcome):
            return result
        return ToolOutcome.ok(result)

    async def aclose(self) -> None:
        self.closed = True


async def no_sleep(_seconds: float) -> None:
    return None
