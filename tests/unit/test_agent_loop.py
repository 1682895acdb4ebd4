import asyncio
import time

import pytest
from fakes import FakeToolClient, ScriptedProvider, router_for, text, tool_use, tool_uses

from orion.config import get_settings
from orion.events.writer import MemoryEventSink
from orion.orchestrator.compaction import Compactor
from orion.orchestrator.loop import DEGRADED_RESPONSE, AgentLoop
from orion.orchestrator.types import ConversationTurn, LoopState, Transcript
from orion.providers.router import ProviderRouter
from orion.tools.health import HealthRegistry
from orion.tools.registry import ToolRegistry
from orion.tools.runtime import ToolRuntime
from orion.tools.types import ToolOutcome


def _runtime(*clients, sink=None) -> ToolRuntime:
    registry = ToolRegistry({client.server_id: client for client in clients})
    return ToolRuntime(registry, HealthRegistry(), sink=sink)


@pytest.mark.asyncio
async def test_single_tool_call_round_trip() -> None:
    sink = MemoryEventSink()
    client = FakeToolClient(
        "weather", ["forecast"], lambda name, args, n: {"city": args["city"], "temp_c": 12}
    )
    provider = ScriptedProvider(
        tool_use("weather__forecast", {"city": "Oslo"}),
        text("Oslo will be around 12 degrees tomorrow."),
    )
    loop = AgentLoop(ProviderRouter(provider), _runtime(client, sink=sink), sink=sink)

    reply = await loop.run("What is the weather in Oslo tomorrow?")

    assert reply.text == "Oslo will be around 12 degrees tomorrow."
    assert reply.state is LoopState.DONE
    assert reply.iterations == 1
    assert reply.degraded is False
    assert reply.verification["passed"] is True
    assert client.calls == [("forecast", {"city": "Oslo"})]
    turns = loop.transcript.turns
    assert [(t.role, t.kind) for t in turns] == [
        ("user", "message"),
        ("user", "tool_result"),
        ("assistant", "message"),
    ]
    assert "[tool result: weather/forecast (ok)]" in turns[1].content
    assert '"temp_c": 12' in turns[1].content
    first_call_tools = [tool["name"] for tool in provider.calls[0]["tools"]]
    assert first_call_tools == ["weather__forecast"]
    types = sink.types()
    assert types[0] == "agent.loop.start"
    assert types[-1] == "agent.loop.end"
    assert "tool.call.success" in types
    assert all(event.trace_id == reply.trace_id for event in sink.events)


@pytest.mark.asyncio
async def test_parallel_tool_calls_in_one_round() -> None:
    client = FakeToolClient("search", ["web", "news"])
    provider = ScriptedProvider(
        tool_uses("search__web", "search__news"),
        text("Both sources agree on the release date."),
    )
    loop = AgentLoop(ProviderRouter(provider), _runtime(client))

    reply = await loop.run("When is the release date?")

    assert reply.iterations == 1
    assert [r.tool_name for r in reply.tool_results] == ["web", "news"]
    assert len(loop.transcript) == 3


@pytest.mark.asyncio
async def test_iteration_cap_stops_loop() -> None:
    client = FakeToolClient("search", ["web"])
    provider = ScriptedProvider(default=tool_use("search__web", {"q": "more"}))
    loop = AgentLoop(ProviderRouter(provider), _runtime(client), max_iterations=2)

    reply = await loop.run("Keep searching forever")

    assert reply.stop_reason == "LoopIterationLimitExceeded"
    assert reply.degraded is True
    assert reply.iterations == 2
    assert len(client.calls) == 2
    assert len(provider.calls) == 3
    assert "more tool steps" in reply.text
    assert loop.state is LoopState.DONE


@pytest.mark.asyncio
async def test_wall_clock_cap_stops_loop() -> None:
    provider = ScriptedProvider(text("too late"), delay=2.0)
    loop = AgentLoop(ProviderRouter(provider), _runtime(), max_seconds=0.2)

    reply = await asyncio.wait_for(loop.run("Slow question"), timeout=3)

    assert reply.stop_reason == "LoopTimeExceeded"
    assert reply.degraded is True
    assert "took longer" in reply.text


class _StalledDiscoveryClient(FakeToolClient):
    async def list_tools(self) -> ToolOutcome:
        await asyncio.sleep(10)
        return await super().list_tools()


@pytest.mark.asyncio
async def test_stalled_tool_discovery_respects_turn_deadline() -> None:
    provider = ScriptedProvider(text("never reached"))
    loop = AgentLoop(
        ProviderRouter(provider), _runtime(_StalledDiscoveryClient("search")), max_seconds=0.5
    )

    started = time.monotonic()
    reply = await asyncio.wait_for(loop.run("Any news on the outage?"), timeout=3)

    assert time.monotonic() - started < 1.5
    assert reply.stop_reason == "LoopTimeExceeded"
    assert reply.degraded is True
    assert provider.calls == []


@pytest.mark.asyncio
async def test_provider_failure_returns_degraded_reply() -> None:
    loop = AgentLoop(router_for(RuntimeError("503 from upstream")), _runtime())

    reply = await loop.run("Hello there")

    assert reply.text == DEGRADED_RESPONSE
    assert reply.stop_reason == "provider_error"
    assert reply.degraded is True
    assert loop.transcript.turns[-1].content == DEGRADED_RESPONSE


@pytest.mark.asyncio
async def test_failed_tool_is_mentioned_in_answer() -> None:
    client = FakeToolClient(
        "search",
        ["web"],
        lambda name, args, n: ToolOutcome.fail("execution_failed", "quota", retryable=False),
    )
    provider = ScriptedProvider(
        tool_use("search__web", {"q": "release"}),
        text("I could not confirm the release date from search."),
    )
    loop = AgentLoop(ProviderRouter(provider), _runtime(client))

    reply = await loop.run("When is the release date?")

    assert reply.tool_results[0].outcome == "error"
    assert "could not complete the request" in reply.text
    assert "quota" not in reply.text
    second_prompt = provider.calls[1]["messages"][-1]["content"]
    assert "(error)" in second_prompt


@pytest.mark.asyncio
async def test_out_of_scope_tool_is_rejected_as_unknown() -> None:
    client = FakeToolClient("search", ["web"])
    other = FakeToolClient("fs", ["read_file"])
    runtime = _runtime(client, other)

    async def research(args):
        return "should not run"

    runtime.registry.register("research", "Research", research)
    provider = ScriptedProvider(
        tool_uses("research", "fs__read_file"),
        text("Done with what I had."),
    )
    loop = AgentLoop(
        ProviderRouter(provider),
        runtime,
        tool_servers=["search"],
        include_static_tools=False,
        verify=False,
    )

    reply = await loop.run("look around")

    assert [r.error_kind for r in reply.tool_results] == ["invalid_input", "invalid_input"]
    assert other.calls == []
    assert [tool["name"] for tool in provider.calls[0]["tools"]] == ["search__web"]


@pytest.mark.asyncio
async def test_failed_verification_triggers_one_revision() -> None:
    provider = ScriptedProvider(
        text('Traceback (most recent call last):\n  File "x.py", line 1\nValueError: boom'),
        text("The import failed because the input file was empty."),
    )
    loop = AgentLoop(ProviderRouter(provider), _runtime())

    reply = await loop.run("Why did the import fail?")

    assert reply.text == "The import failed because the input file was empty."
    assert reply.verification["passed"] is True
    assert len(provider.calls) == 2
    assert "failed these checks" in provider.calls[1]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_compaction_runs_when_budget_threshold_reached(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CONTEXT_BUDGET_TOKENS", "2000")
    monkeypatch.setenv("COMPACTION_KEEP_LAST_N", "4")
    get_settings.cache_clear()
    history = [
        ConversationTurn(
            role="user" if i % 2 == 0 else "assistant", content=f"turn {i} " + "word " * 200
        )
        for i in range(20)
    ]
    compactor = Compactor(router_for(text("## Key Context\n- Long chat about word counts")))
    provider = ScriptedProvider(text("Here is the short answer about turn counts."))
    loop = AgentLoop(
        ProviderRouter(provider),
        _runtime(),
        compactor=compactor,
        transcript=Transcript(history),
    )

    reply = await loop.run("How many turns did we have?")

    assert reply.compaction_applied is True
    turns = loop.transcript.turns
    assert turns[0].kind == "summary"
    assert len(turns) == 1 + 4 + 1
    assert turns[-2].content == "How many turns did we have?"
    assert provider.calls[0]["messages"][1]["content"].startswith(
        "[Previous conversation summary]"
    )


@pytest.mark.asyncio
async def test_concurrent_runs_do_not_interleave() -> None:
    provider = ScriptedProvider(text("first answer here"), text("second answer here"), delay=0.05)
    loop = AgentLoop(ProviderRouter(provider), _runtime(), verify=False)

    await asyncio.gather(loop.run("first question"), loop.run("second question"))

    roles = [turn.role for turn in loop.transcript.turns]
    assert roles == ["user", "assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_queued_turn_gets_its_own_time_budget() -> None:
    provider = ScriptedProvider(text("first answer here"), text("second answer here"), delay=0.6)
    loop = AgentLoop(ProviderRouter(provider), _runtime(), verify=False, max_seconds=1.0)

    first, second = await asyncio.gather(
        loop.run("first question"), loop.run("second question")
    )

    assert first.stop_reason == "end_turn"
    assert second.stop_reason == "end_turn"
    assert second.text == "second answer here"
    assert second.degraded is False


def _long_history() -> list[ConversationTurn]:
    return [
        ConversationTurn(
            role="user" if i % 2 == 0 else "assistant", content=f"turn {i} " + "word " * 200
        )
        for i in range(20)
    ]


@pytest.mark.asyncio
async def test_compaction_is_bounded_by_turn_deadline(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONTEXT_BUDGET_TOKENS", "2000")
    monkeypatch.setenv("COMPACTION_KEEP_LAST_N", "4")
    get_settings.cache_clear()
    sink = MemoryEventSink()
    compactor = Compactor(
        router_for(text("## Key Context\n- Long chat"), delay=5.0), sink=sink, timeout_seconds=20
    )
    provider = ScriptedProvider(text("Short answer."))
    loop = AgentLoop(
        ProviderRouter(provider),
        _runtime(),
        compactor=compactor,
        transcript=Transcript(_long_history()),
        max_seconds=1.5,
    )

    started = time.monotonic()
    reply = await asyncio.wait_for(loop.run("How many turns did we have?"), timeout=5)

    assert time.monotonic() - started < 2.5
    assert reply.compaction_applied is False
    assert reply.stop_reason == "LoopTimeExceeded"
    assert "compaction.failed" in sink.types()
    assert provider.calls == []


@pytest.mark.asyncio
async def test_compaction_skipped_when_turn_is_nearly_out_of_time(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CONTEXT_BUDGET_TOKENS", "2000")
    monkeypatch.setenv("COMPACTION_KEEP_LAST_N", "4")
    get_settings.cache_clear()
    summarizer = ScriptedProvider(text("## Key Context\n- Long chat"), delay=3.0)
    provider = ScriptedProvider(text("Short answer."))
    loop = AgentLoop(
        ProviderRouter(provider),
        _runtime(),
        compactor=Compactor(ProviderRouter(summarizer), timeout_seconds=20),
        transcript=Transcript(_long_history()),
        max_seconds=0.5,
        verify=False,
    )

    started = time.monotonic()
    reply = await asyncio.wait_for(loop.run("How many turns did we have?"), timeout=5)

    assert time.monotonic() - started < 1.5
    assert summarizer.calls == []
    assert reply.compaction_applied is False
    assert reply.text == "Short answer."


@pytest.mark.asyncio
async def test_preferences_reach_system_prompt(tmp_path) -> None:
    from orion.memory.store import FileMemoryStore, SafeMemory, preferences_key

    memory = SafeMemory(FileMemoryStore(tmp_path))
    await memory.put(preferences_key("u1"), '{"units": "metric"}')
    provider = ScriptedProvider(text("It is 21 degrees."))
    loop = AgentLoop(ProviderRouter(provider), _runtime(), memory=memory, user_id="u1")

    await loop.run("How warm is it?")

    assert "- units: metric" in provider.calls[0]["messages"][0]["content"]
