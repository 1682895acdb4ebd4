"""System prompt assembly for the agent loop."""

from __future__ import annotations

from datetime import UTC, datetime

BASE_INSTRUCTIONS = (
    "You are Orion, an assistant that answers questions and completes tasks for the user.\n"
    "- Answer directly. Use tools only when they add information you do not have.\n"
    "- Call several independent tools in the same response when you can.\n"
    "- If a tool fails or a source is unavailable, continue with what you have and "
    "say briefly what could not be checked.\n"
    "- Never show error traces, internal codes or credentials to the user."
)
CITATION_INSTRUCTIONS = (
    "When you rely on a numbered source, cite it inline with its marker, e.g. [1]. "
    "Do not invent sources."
)
RESEARCH_INSTRUCTIONS = (
    "For broad questions that need several sources, call the `research` tool once with "
    "the full question instead of calling many tools yourself."
)
PREFERENCES_BUDGET_TOKENS = 600


def _truncate_with_marker(text: str, budget_tokens: int) -> str:
    budget_chars = max(64, budget_tokens * 4)
    normalized = text.strip()
    if len(normalized) <= budget_chars:
        return normalized
    marker = "\n[...truncated for budget...]"
    return normalized[: budget_chars - len(marker)] + marker


def _tool_summary(tools: list[dict[str, object]]) -> str:
    lines: list[str] = []
    for tool in tools:
        name = str(tool.get("name", ""))
        description = str(tool.get("description", "")).strip().splitlines()
        lines.append(f"- {name}: {description[0] if description else 'no description'}")
    return "\n".join(lines)


def build_system_prompt(
    system_context: str = "",
    *,
    tools: list[dict[str, object]] | None = None,
    preferences: dict[str, str] | None = None,
    now: datetime | None = None,
) -> str:
    current = now or datetime.now(UTC)
    parts = [BASE_INSTRUCTIONS, f"Current time (UTC): {current.strftime('%Y-%m-%d %H:%M')}"]
    if system_context.strip():
        parts.append(system_context.strip())
    tool_list = tools or []
    if tool_list:
        parts.append("Available tools:\n" + _tool_summary(tool_list))
        if any(tool.get("name") == "research" for tool in tool_list):
            parts.append(RESEARCH_INSTRUCTIONS)
        parts.append(CITATION_INSTRUCTIONS)
    else:
        parts.append("No tools are available for this turn; answer from the conversation.")
    if preferences:
        rendered = "\n".join(f"- {key}: {value}" for key, value in sorted(preferences.items()))
        parts.append(
            "Known user preferences:\n"
            + _truncate_with_marker(rendered, PREFERENCES_BUDGET_TOKENS)
        )
    return "\n\n".join(parts)
