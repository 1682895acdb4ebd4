"""CLI helpers for one-shot questions and tool listings."""

import json
import os
import socket
from typing import Any

from orion.app import build_app
from orion.events.writer import EventSink
from orion.orchestrator.types import AgentReply


def default_cli_user() -> str:
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    host = socket.gethostname() or "local"
    return f"cli:{user}@{host}"


async def ask_once(
    message: str,
    *,
    user_id: str,
    research: bool = True,
    sink: EventSink | None = None,
) -> AgentReply:
    app = build_app(sink=sink, research=research)
    try:
        return await app.new_loop(user_id=user_id).run(message)
    finally:
        await app.aclose()


async def discover_tools() -> dict[str, Any]:
    app = build_app(research=True)
    try:
        outcomes = await app.registry.discover(app.health, force=True)
        servers: dict[str, Any] = {}
        for server_id in app.registry.server_ids():
            outcome = outcomes.get(server_id)
            servers[server_id] = {
                "ok": outcome is not None and outcome.success,
                "error": "" if outcome is None or outcome.success else outcome.error_message,
                "tools": [tool.name for tool in app.registry.server_tools(server_id)],
            }
        static = [
            schema["name"] for schema in app.registry.schemas([], include_static=True)
        ]
        return {"static": static, "servers": servers}
    finally:
        await app.aclose()


def format_reply(reply: AgentReply, *, json_output: bool, events: list[Any] | None = None) -> str:
    if not json_output:
        return reply.text
    payload: dict[str, Any] = {
        "ok": not reply.degraded,
        "assistant": reply.text,
        "trace_id": reply.trace_id,
        "iterations": reply.iterations,
        "stop_reason": reply.stop_reason,
        "compaction_applied": reply.compaction_applied,
        "tool_calls": [
            {
                "tool": result.tool_name,
                "server": result.server_id,
                "outcome": result.outcome,
                "retry_count": result.retry_count,
                "duration_ms": result.duration_ms,
            }
            for result in reply.tool_results
        ],
        "verification": reply.verification,
    }
    if events is not None:
        payload["events"] = [
            {
                "event_type": event.event_type,
                "span_id": event.span_id,
                "parent_span_id": event.parent_span_id,
                "payload": event.payload_redacted,
            }
            for event in events
        ]
    return json.dumps(payload)


def format_tools(listing: dict[str, Any], *, json_output: bool) -> str:
    if json_output:
        return json.dumps(listing)
    lines = [f"static: {', '.join(listing['static']) or '(none)'}"]
    for server_id, info in listing["servers"].items():
        if not info["ok"]:
            lines.append(f"{server_id}: unavailable ({info['error']})")
            continue
        lines.append(f"{server_id}: {', '.join(info['tools']) or '(no tools)'}")
    if not listing["servers"]:
        lines.append("no tool servers configured")
    return "\n".join(lines)
