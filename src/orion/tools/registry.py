"""Tool registration helpers.

Two kinds of tools share one namespace. Static tools are in-process
handlers (``research``). Server tools come from discovery and are exposed to
the model as ``<server_id>__<tool>``.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from orion.tools.types import LOCAL_SERVER_ID, ToolOutcome, ToolSchema

if TYPE_CHECKING:
    from orion.tools.client import ToolClient
    from orion.tools.health import HealthRegistry

ToolCallable = Callable[[dict[str, Any]], Awaitable[Any]]

TOOL_NAME_SEPARATOR = "__"
DEFAULT_DISCOVERY_TTL_SECONDS = 300

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolDef:
    name: str
    description: str
    handler: ToolCallable
    parameters: dict[str, object] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    timeout_seconds: float | None = None


@dataclass(slots=True, frozen=True)
class ToolRoute:
    server_id: str
    tool_name: str


def qualified_name(server_id: str, tool_name: str) -> str:
    return f"{server_id}{TOOL_NAME_SEPARATOR}{tool_name}"


def parse_tool_name(name: str) -> ToolRoute | None:
    """Split ``server__tool`` on the first separator."""
    server_id, sep, tool_name = name.partition(TOOL_NAME_SEPARATOR)
    if not sep or not server_id or not tool_name:
        return None
    return ToolRoute(server_id=server_id, tool_name=tool_name)


class ToolRegistry:
    def __init__(
        self,
        clients: "dict[str, ToolClient] | None" = None,
        *,
        discovery_ttl_seconds: float = DEFAULT_DISCOVERY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tools: dict[str, ToolDef] = {}
        self._clients: dict[str, ToolClient] = dict(clients or {})
        self._server_tools: dict[str, list[ToolSchema]] = {}
        self._discovered_at: dict[str, float] = {}
        self.discovery_ttl_seconds = discovery_ttl_seconds
        self._clock = clock

    def register(
        self,
        name: str,
        description: str,
        handler: ToolCallable,
        parameters: dict[str, object] | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        if TOOL_NAME_SEPARATOR in name:
            raise ValueError(f"static tool names may not contain {TOOL_NAME_SEPARATOR!r}: {name}")
        self._tools[name] = ToolDef(
            name=name,
            description=description,
            handler=handler,
            parameters=parameters or {"type": "object", "properties": {}},
            timeout_seconds=timeout_seconds,
        )

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def add_client(self, client: "ToolClient") -> None:
        self._clients[client.server_id] = client

    def client(self, server_id: str) -> "ToolClient | None":
        return self._clients.get(server_id)

    def server_ids(self) -> list[str]:
        return sorted(self._clients)

    def set_server_tools(self, server_id: str, tools: list[ToolSchema]) -> None:
        self._server_tools[server_id] = list(tools)
        self._discovered_at[server_id] = self._clock()

    def server_tools(self, server_id: str) -> list[ToolSchema]:
        return list(self._server_tools.get(server_id, []))

    def needs_discovery(self, server_id: str) -> bool:
        discovered_at = self._discovered_at.get(server_id)
        if discovered_at is None:
            return True
        return self._clock() - discovered_at >= self.discovery_ttl_seconds

    async def discover(
        self,
        health: "HealthRegistry",
        *,
        server_ids: Collection[str] | None = None,
        force: bool = False,
    ) -> dict[str, ToolOutcome]:
        """Refresh tool lists for servers that are due, skipping degraded ones."""
        outcomes: dict[str, ToolOutcome] = {}
        for server_id in self.server_ids() if server_ids is None else server_ids:
            client = self._clients.get(server_id)
            if client is None:
                continue
            if not force and not self.needs_discovery(server_id):
                continue
            if await health.should_skip(server_id):
                logger.info("Skipping discovery for degraded server=%s", server_id)
                continue
            outcome = await client.list_tools()
            outcomes[server_id] = outcome
            if outcome.success:
                self.set_server_tools(server_id, outcome.data)
                await health.record_success(server_id)
            else:
                logger.warning(
                    "Tool discovery failed server=%s kind=%s error=%s",
                    server_id,
                    outcome.error_kind,
                    outcome.error_message,
                )
                if outcome.error_kind != "invalid_input":
                    await health.record_failure(server_id, outcome.error_message)
        return outcomes

    def resolve(self, name: str) -> ToolRoute | None:
        if name in self._tools:
            return ToolRoute(server_id=LOCAL_SERVER_ID, tool_name=name)
        route = parse_tool_name(name)
        if route is None or route.server_id not in self._clients:
            return None
        return route

    def schemas(
        self,
        server_ids: Collection[str] | None = None,
        *,
        include_static: bool = True,
    ) -> list[dict[str, object]]:
        """Model-facing schemas; ``server_ids`` limits which servers contribute tools."""
        schemas: list[dict[str, object]] = []
        if include_static:
            schemas.extend(
                {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                }
                for tool in self._tools.values()
            )
        for sid, tools in sorted(self._server_tools.items()):
            if server_ids is not None and sid not in server_ids:
                continue
            schemas.extend(
                {
                    "name": qualified_name(sid, tool.name),
                    "description": tool.description,
                    "parameters": tool.input_schema,
                }
                for tool in tools
            )
        return schemas

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
