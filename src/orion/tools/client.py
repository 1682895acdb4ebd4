"""Tool server clients.

One client per configured server. Clients connect lazily, bound connection
setup and each call by separate timeouts, and report every failure as a
``ToolOutcome`` instead of raising.
"""

import asyncio
import logging
import time
from datetime import timedelta
from itertools import count
from typing import Any

import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, METHOD_NOT_FOUND

from orion.errors import ToolError, ToolExecutionFailed, ToolInvalidInput, ToolUnavailable
from orion.tools.config import HttpServerConfig, StdioServerConfig
from orion.tools.types import ToolOutcome, ToolSchema

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
_INVALID_INPUT_RPC_CODES = {INVALID_PARAMS, METHOD_NOT_FOUND}
_REQUEST_TIMEOUT_CODE = 408


def _content_to_payload(result: dict[str, Any]) -> Any:
    """Flatten MCP tool content into text the model can read."""
    structured = result.get("structuredContent")
    content = result.get("content")
    texts: list[str] = []
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    texts.append(text)
    if texts:
        return "\n".join(texts)
    if structured is not None:
        return structured
    return result


class ToolClient:
    """Shared outcome mapping and bookkeeping for both transports."""

    transport = "unknown"

    def __init__(
        self,
        server_id: str,
        *,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self.server_id = server_id
        self.connect_timeout_seconds = connect_timeout_seconds
        self.call_timeout_seconds = call_timeout_seconds
        self.last_success_at: float | None = None
        self.last_latency_ms: int | None = None
        self.last_error: str | None = None
        self.last_error_at: float | None = None

    async def _list_tools_raw(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def _call_tool_raw(
        self, name: str, arguments: dict[str, Any], timeout_seconds: float
    ) -> dict[str, Any]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    @property
    def connected(self) -> bool:
        return False

    def _record(self, outcome: ToolOutcome, started: float) -> ToolOutcome:
        self.last_latency_ms = int((time.perf_counter() - started) * 1000)
        if outcome.success:
            self.last_success_at = time.time()
        else:
            self.last_error = outcome.error_message
            self.last_error_at = time.time()
        return outcome

    async def _guard(self, operation: str, coro: Any) -> ToolOutcome:
        started = time.perf_counter()
        try:
            data = await coro
        except ToolError as exc:
            outcome = ToolOutcome.from_error(exc)
        except TimeoutError:
            outcome = ToolOutcome.fail(
                "unavailable", f"{self.server_id} {operation} timed out", retryable=True
            )
        except Exception as exc:
            logger.exception("Unexpected tool client failure server=%s", self.server_id)
            outcome = ToolOutcome.fail(
                "execution_failed", f"{type(exc).__name__}: {exc}", retryable=False
            )
        else:
            outcome = ToolOutcome.ok(data)
        return self._record(outcome, started)

    async def list_tools(self) -> ToolOutcome:
        """Return a ``ToolOutcome`` whose data is a list of ``ToolSchema``.

        Bounded by ``call_timeout_seconds``; a server that never answers
        ``tools/list`` comes back as ``unavailable``.
        """

        async def _list() -> list[ToolSchema]:
            async with asyncio.timeout(self.call_timeout_seconds):
                raw_tools = await self._list_tools_raw()
            schemas: list[ToolSchema] = []
            for item in raw_tools:
                name = item.get("name")
                if not isinstance(name, str) or not name:
                    continue
                input_schema = item.get("inputSchema")
                schemas.append(
                    ToolSchema(
                        name=name,
                        description=str(item.get("description") or ""),
                        input_schema=(
                            input_schema
                            if isinstance(input_schema, dict)
                            else {"type": "object", "properties": {}}
                        ),
                        server_id=self.server_id,
                    )
                )
            return schemas

        return await self._guard("tools/list", _list())

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        *,
        timeout_seconds: float | None = None,
    ) -> ToolOutcome:
        timeout = timeout_seconds or self.call_timeout_seconds

        async def _call() -> Any:
            result = await self._call_tool_raw(name, arguments, timeout)
            if result.get("isError"):
                detail = _content_to_payload(result)
                raise ToolExecutionFailed(
                    f"tool reported error: {detail if isinstance(detail, str) else 'no detail'}",
                    retryable=False,
                )
            return _content_to_payload(result)

        return await self._guard("tools/call", _call())


class HttpToolClient(ToolClient):
    """JSON-RPC 2.0 over HTTP POST (``tools/list``, ``tools/call``)."""

    transport = "http"

    def __init__(
        self,
        server_id: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        bearer_token: str = "",
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            server_id,
            connect_timeout_seconds=connect_timeout_seconds,
            call_timeout_seconds=call_timeout_seconds,
        )
        self.url = url
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        if bearer_token:
            self._headers["Authorization"] = f"Bearer {bearer_token}"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = count(1)

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._headers,
                timeout=httpx.Timeout(
                    self.call_timeout_seconds, connect=self.connect_timeout_seconds
                ),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _rpc(
        self, method: str, params: dict[str, Any], timeout_seconds: float
    ) -> dict[str, Any]:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        client = self._get_client()
        try:
            response = await client.post(
                self.url,
                json=body,
                timeout=httpx.Timeout(timeout_seconds, connect=self.connect_timeout_seconds),
            )
        except httpx.TimeoutException as exc:
            raise ToolUnavailable(f"{self.server_id} timed out: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            raise ToolUnavailable(f"{self.server_id} unreachable: {exc}") from exc

        status = response.status_code
        if status >= 400:
            message = f"{self.server_id} returned HTTP {status}"
            if status in {401, 403}:
                raise ToolUnavailable(message, retryable=False)
            if status in {400, 404, 422}:
                raise ToolInvalidInput(message)
            raise ToolExecutionFailed(message, retryable=status == 429 or status >= 500)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ToolExecutionFailed(
                f"{self.server_id} returned invalid JSON", retryable=False
            ) from exc
        if not isinstance(payload, dict):
            raise ToolExecutionFailed(f"{self.server_id} returned non-object", retryable=False)

        error = payload.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            message = f"{self.server_id} error {code}: {error.get('message', 'unknown')}"
            if code in _INVALID_INPUT_RPC_CODES:
                raise ToolInvalidInput(message)
            raise ToolExecutionFailed(message, retryable=False)
        result = payload.get("result")
        if not isinstance(result, dict):
            raise ToolExecutionFailed(f"{self.server_id} response missing result", retryable=False)
        return result

    async def _list_tools_raw(self) -> list[dict[str, Any]]:
        result = await self._rpc("tools/list", {}, self.call_timeout_seconds)
        tools = result.get("tools")
        return [tool for tool in tools if isinstance(tool, dict)] if isinstance(tools, list) else []

    async def _call_tool_raw(
        self, name: str, arguments: dict[str, Any], timeout_seconds: float
    ) -> dict[str, Any]:
        return await self._rpc(
            "tools/call", {"name": name, "arguments": arguments}, timeout_seconds
        )


class StdioToolClient(ToolClient):
    """Local subprocess server driven through the MCP SDK.

    The session lives in a background task that owns the transport context
    managers; callers share the session until it dies or ``aclose`` runs.
    """

    transport = "stdio"

    def __init__(
        self,
        server_id: str,
        command: str,
        args: list[str] | None = None,
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(
            server_id,
            connect_timeout_seconds=connect_timeout_seconds,
            call_timeout_seconds=call_timeout_seconds,
        )
        self._params = StdioServerParameters(
            command=command, args=list(args or []), env=env or None, cwd=cwd
        )
        self._session: ClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._closing = asyncio.Event()
        self._connect_error: str | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def _run_session(self, ready: asyncio.Event) -> None:
        try:
            async with stdio_client(self._params) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    self._session = session
                    ready.set()
                    await self._closing.wait()
        except Exception as exc:
            self._connect_error = f"{type(exc).__name__}: {exc}"
            logger.warning("Stdio tool server exited server=%s error=%s", self.server_id, exc)
        finally:
            self._session = None
            ready.set()

    async def _stop_runner(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is None:
            return
        self._closing.set()
        try:
            await asyncio.wait_for(runner, timeout=self.connect_timeout_seconds)
        except TimeoutError:
            runner.cancel()
        self._closing = asyncio.Event()

    async def _ensure_session(self) -> ClientSession:
        async with self._lock:
            if self._session is not None:
                return self._session
            await self._stop_runner()
            self._connect_error = None
            ready = asyncio.Event()
            self._runner = asyncio.create_task(self._run_session(ready))
            try:
                await asyncio.wait_for(ready.wait(), timeout=self.connect_timeout_seconds)
            except TimeoutError as exc:
                await self._stop_runner()
                raise ToolUnavailable(
                    f"{self.server_id} did not start within {self.connect_timeout_seconds}s"
                ) from exc
            if self._session is None:
                await self._stop_runner()
                raise ToolUnavailable(
                    f"{self.server_id} failed to start: {self._connect_error or 'unknown'}"
                )
            return self._session

    async def aclose(self) -> None:
        async with self._lock:
            await self._stop_runner()

    @staticmethod
    def _map_mcp_error(server_id: str, exc: McpError) -> ToolError:
        code = exc.error.code
        message = f"{server_id} error {code}: {exc.error.message}"
        if code in _INVALID_INPUT_RPC_CODES:
            return ToolInvalidInput(message)
        if code == _REQUEST_TIMEOUT_CODE:
            return ToolUnavailable(message)
        return ToolExecutionFailed(message, retryable=False)

    async def _list_tools_raw(self) -> list[dict[str, Any]]:
        session = await self._ensure_session()
        try:
            result = await session.list_tools()
        except McpError as exc:
            raise self._map_mcp_error(self.server_id, exc) from exc
        return [tool.model_dump(mode="json") for tool in result.tools]

    async def _call_tool_raw(
        self, name: str, arguments: dict[str, Any], timeout_seconds: float
    ) -> dict[str, Any]:
        session = await self._ensure_session()
        try:
            result = await session.call_tool(
                name=name,
                arguments=arguments,
                read_timeout_seconds=timedelta(seconds=timeout_seconds),
            )
        except McpError as exc:
            raise self._map_mcp_error(self.server_id, exc) from exc
        return result.model_dump(mode="json", by_alias=True)


def build_client(
    server_id: str,
    config: StdioServerConfig | HttpServerConfig,
    *,
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
) -> ToolClient:
    connect = config.connect_timeout_seconds or connect_timeout_seconds
    call = config.call_timeout_seconds or call_timeout_seconds
    if isinstance(config, StdioServerConfig):
        return StdioToolClient(
            server_id,
            config.command,
            config.args,
            env=config.env,
            cwd=config.cwd,
            connect_timeout_seconds=connect,
            call_timeout_seconds=call,
        )
    return HttpToolClient(
        server_id,
        config.url,
        headers=config.headers,
        bearer_token=config.bearer_token,
        connect_timeout_seconds=connect,
        call_timeout_seconds=call,
    )
