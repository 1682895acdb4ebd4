import pytest
from fakes import FakeToolClient

from orion.tools.health import HealthRegistry
from orion.tools.registry import ToolRegistry, ToolRoute, parse_tool_name, qualified_name
from orion.tools.types import LOCAL_SERVER_ID, ToolOutcome


async def _noop(args):
    return args


def test_parse_tool_name_splits_on_first_separator() -> None:
    assert parse_tool_name("search__web_search") == ToolRoute("search", "web_search")
    assert parse_tool_name("fs__read__file") == ToolRoute("fs", "read__file")
    assert parse_tool_name("research") is None
    assert parse_tool_name("__oops") is None
    assert qualified_name("search", "web_search") == "search__web_search"


def test_static_names_may_not_contain_separator() -> None:
    registry = ToolRegistry()
    with pytest.raises(ValueError):
        registry.register("bad__name", "Bad", _noop)


@pytest.mark.asyncio
async def test_discover_and_schemas() -> None:
    registry = ToolRegistry(
        {
            "search": FakeToolClient("search", ["web_search"]),
            "fs": FakeToolClient("fs", ["read_file", "list_dir"]),
        }
    )
    registry.register("research", "Research", _noop)
    health = HealthRegistry()

    outcomes = await registry.discover(health)

    assert set(outcomes) == {"fs", "search"}
    names = [schema["name"] for schema in registry.schemas()]
    assert names == ["research", "fs__read_file", "fs__list_dir", "search__web_search"]
    only_search = registry.schemas(["search"], include_static=False)
    assert [schema["name"] for schema in only_search] == ["search__web_search"]
    assert only_search[0]["parameters"]["type"] == "object"
    assert registry.resolve("fs__read_file") == ToolRoute("fs", "read_file")
    assert registry.resolve("research") == ToolRoute(LOCAL_SERVER_ID, "research")
    assert registry.resolve("ghost__tool") is None


@pytest.mark.asyncio
async def test_discovery_respects_ttl_and_scope() -> None:
    now = [0.0]
    client = FakeToolClient("search", ["web_search"])
    other = FakeToolClient("fs", ["read_file"])
    registry = ToolRegistry(
        {"search": client, "fs": other}, discovery_ttl_seconds=300, clock=lambda: now[0]
    )
    health = HealthRegistry()

    await registry.discover(health, server_ids=["search"])
    await registry.discover(health, server_ids=["search"])
    assert client.list_calls == 1
    assert other.list_calls == 0

    await registry.discover(health, server_ids=[])
    assert other.list_calls == 0

    now[0] = 301.0
    await registry.discover(health, server_ids=["search"])
    assert client.list_calls == 2


@pytest.mark.asyncio
async def test_failed_discovery_counts_against_health_and_skips_degraded() -> None:
    broken = FakeToolClient(
        "search", list_outcome=ToolOutcome.fail("unavailable", "refused", retryable=True)
    )
    registry = ToolRegistry({"search": broken})
    health = HealthRegistry(failure_threshold=2)

    await registry.discover(health)
    await registry.discover(health)
    assert (await health.get("search")).available is False

    await registry.discover(health)
    assert broken.list_calls == 2
    assert registry.schemas() == []


@pytest.mark.asyncio
async def test_aclose_closes_every_client() -> None:
    clients = {"a": FakeToolClient("a"), "b": FakeToolClient("b")}
    registry = ToolRegistry(clients)
    await registry.aclose()
    assert all(client.closed for client in clients.values())
