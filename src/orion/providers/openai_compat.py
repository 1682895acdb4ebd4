"""Provider adapter for OpenAI-compatible chat completions APIs."""

import json
from typing import Any

import httpx

from orion.config import get_settings
from orion.providers.base import ModelResponse, StopReason, Usage


class OpenAICompatProvider:
    def __init__(
        self,
        model: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self._transport = transport

    @staticmethod
    def _coerce_text(value: object) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            chunks: list[str] = []
            for item in value:
                if isinstance(item, str):
                    chunks.append(item)
                elif isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        chunks.append(text)
            return "".join(chunks)
        return ""

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
            function: dict[str, object] = {
                "name": name,
                "parameters": (
                    params if isinstance(params, dict) else {"type": "object", "properties": {}}
                ),
            }
            description = tool.get("description")
            if isinstance(description, str) and description:
                function["description"] = description
            normalized.append({"type": "function", "function": function})
        return normalized or None

    @staticmethod
    def _parse_arguments(arguments: object) -> dict[str, Any]:
        if isinstance(arguments, dict):
            return arguments
        if isinstance(arguments, str):
            try:
                decoded = json.loads(arguments)
            except json.JSONDecodeError:
                return {}
            if isinstance(decoded, dict):
                return decoded
        return {}

    @staticmethod
    def _parse_response(payload: dict[str, Any]) -> ModelResponse:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise RuntimeError("chat completion response missing choices")
        first = choices[0]
        if not isinstance(first, dict):
            raise RuntimeError("chat completion choice malformed")
        message = first.get("message")
        if not isinstance(message, dict):
            raise RuntimeError("chat completion message missing")
        content = OpenAICompatProvider._coerce_text(message.get("content"))
        tool_calls: list[dict[str, Any]] = []
        tool_calls_raw = message.get("tool_calls") or []
        if isinstance(tool_calls_raw, list):
            for call in tool_calls_raw:
                if not isinstance(call, dict):
                    continue
                fn = call.get("function")
                if not isinstance(fn, dict):
                    continue
                name = fn.get("name")
                if isinstance(name, str) and name:
                    tool_calls.append(
                        {
                            "id": str(call.get("id", "")),
                            "name": name,
                            "arguments": OpenAICompatProvider._parse_arguments(
                                fn.get("arguments", {})
                            ),
                        }
                    )
        finish = str(first.get("finish_reason", ""))
        stop_reason: StopReason = "max_tokens" if finish == "length" else "end_turn"
        if tool_calls:
            stop_reason = "tool_use"
        usage_raw = payload.get("usage")
        usage = Usage()
        if isinstance(usage_raw, dict):
            usage = Usage(
                input_tokens=int(usage_raw.get("prompt_tokens", 0) or 0),
                output_tokens=int(usage_raw.get("completion_tokens", 0) or 0),
            )
        return ModelResponse(
            text=content, tool_calls=tool_calls, stop_reason=stop_reason, usage=usage
        )

    def _headers(self) -> dict[str, str]:
        api_key = get_settings().openai_api_key.strip()
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def generate(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, object]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> ModelResponse:
        settings = get_settings()
        body: dict[str, object] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        normalized_tools = self._to_tools(tools)
        if normalized_tools is not None:
            body["tools"] = normalized_tools
        endpoint = f"{settings.openai_base_url.rstrip('/')}/chat/completions"
        timeout_seconds = max(10, int(settings.provider_timeout_seconds))
        async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
            response = await client.post(endpoint, json=body, headers=self._headers())
            response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise RuntimeError("chat completion response is not an object")
        return self._parse_response(payload)

    async def health_check(self) -> bool:
        settings = get_settings()
        endpoint = f"{settings.openai_base_url.rstrip('/')}/models"
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(endpoint, headers=self._headers())
            return response.status_code < 400
        except httpx.HTTPError:
            return False
