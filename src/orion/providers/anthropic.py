"""Anthropic Messages API provider adapter."""

from typing import Any

import httpx

from orion.config import get_settings
from orion.providers.base import ModelResponse, StopReason, Usage

_STOP_REASONS: dict[str, StopReason] = {
    "end_turn": "end_turn",
    "stop_sequence": "end_turn",
    "tool_use": "tool_use",
    "max_tokens": "max_tokens",
}


class AnthropicProvider:
    def __init__(
        self,
        model: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self._transport = transport

    @staticmethod
    def _split_system(
        messages: list[dict[str, str]],
    ) -> tuple[str, list[dict[str, str]]]:
        """Pull system messages out and merge same-role neighbours.

        The Messages API wants strictly alternating roles starting with user.
        """
        system_parts: list[str] = []
        merged: list[dict[str, str]] = []
        for message in messages:
            role = message.get("role", "user")
            content = str(message.get("content", ""))
            if role == "system":
                if content.strip():
                    system_parts.append(content)
                continue
            role = "assistant" if role == "assistant" else "user"
            if merged and merged[-1]["role"] == role:
                merged[-1] = {"role": role, "content": f"{merged[-1]['content']}\n\n{content}"}
            else:
                merged.append({"role": role, "content": content})
        if merged and merged[0]["role"] != "user":
            merged.insert(0, {"role": "user", "content": "(conversation continues)"})
        return "\n\n".join(system_parts), merged

    @staticmethod
    def _to_tools(tools: list[dict[str, object]] | None) -> list[dict[str, object]] | None:
        if not tools:
            return None
        normalized: list[dict[str, object]] = []
        for tool in tools:
            name = tool.get("name")
            if not isinstance(name, str) or not name:
                continue
            params = tool.get("parameters")
            entry: dict[str, object] = {
                "name": name,
                "input_schema": (
                    params if isinstance(params, dict) else {"type": "object", "properties": {}}
                ),
            }
            description = tool.get("description")
            if isinstance(description, str) and description:
                entry["description"] = description
            normalized.append(entry)
        return normalized or None

    @staticmethod
    def _parse_response(payload: dict[str, Any]) -> ModelResponse:
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise RuntimeError("anthropic response missing content")
        text_chunks: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text" and isinstance(block.get("text"), str):
                text_chunks.append(block["text"])
            elif kind == "tool_use":
                name = block.get("name")
                arguments = block.get("input")
                if isinstance(name, str) and name:
                    tool_calls.append(
                        {
                            "id": str(block.get("id", "")),
                            "name": name,
                            "arguments": arguments if isinstance(arguments, dict) else {},
                        }
                    )
        usage_raw = payload.get("usage")
        usage = Usage()
        if isinstance(usage_raw, dict):
            usage = Usage(
                input_tokens=int(usage_raw.get("input_tokens", 0) or 0),
                output_tokens=int(usage_raw.get("output_tokens", 0) or 0),
            )
        stop_reason = _STOP_REASONS.get(str(payload.get("stop_reason", "")), "end_turn")
        if tool_calls:
            stop_reason = "tool_use"
        return ModelResponse(
            text="".join(text_chunks),
            tool_calls=tool_calls,
            stop_reason=stop_reason,
            usage=usage,
        )

    def _headers(self) -> dict[str, str]:
        settings = get_settings()
        return {
            "x-api-key": settings.anthropic_api_key,
            "anthropic-version": settings.anthropic_version,
            "content-type": "application/json",
        }

    async def generate(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, object]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> ModelResponse:
        settings = get_settings()
        system, conversation = self._split_system(messages)
        body: dict[str, object] = {
            "model": self.model,
            "messages": conversation,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            body["system"] = system
        normalized_tools = self._to_tools(tools)
        if normalized_tools is not None:
            body["tools"] = normalized_tools
        endpoint = f"{settings.anthropic_base_url.rstrip('/')}/v1/messages"
        timeout_seconds = max(10, int(settings.provider_timeout_seconds))
        async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
            response = await client.post(endpoint, json=body, headers=self._headers())
            response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise RuntimeError("anthropic response is not an object")
        return self._parse_response(payload)

    async def health_check(self) -> bool:
        settings = get_settings()
        if not settings.anthropic_api_key.strip():
            return False
        endpoint = f"{settings.anthropic_base_url.rstrip('/')}/v1/models"
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(endpoint, headers=self._headers())
            return response.status_code < 400
        except httpx.HTTPError:
            return False
