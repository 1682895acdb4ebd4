"""Orion exception hierarchy.

All Orion-specific exceptions inherit from OrionError. Tool errors carry a
``kind`` so component boundaries can turn them into tagged results without
inspecting messages.
"""


class OrionError(Exception):
    """Base exception for all Orion errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ProviderError(OrionError):
    """Error communicating with an LLM provider."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ToolError(OrionError):
    """Error executing a tool."""

    kind = "execution_failed"


class ToolUnavailable(ToolError):
    """Tool server could not be reached (network, DNS, timeout)."""

    kind = "unavailable"

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ToolExecutionFailed(ToolError):
    """Tool server answered with a failure or a malformed payload."""

    kind = "execution_failed"

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ToolInvalidInput(ToolError):
    """Arguments rejected by the tool server. Never retried."""

    kind = "invalid_input"


class CompactionFailed(OrionError):
    """Summarization of older turns failed; the transcript is left as is."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class LoopError(OrionError):
    """The agent loop stopped before the model finished."""


class LoopIterationLimitExceeded(LoopError):
    """Too many tool-use rounds in one turn."""


class LoopTimeExceeded(LoopError):
    """Turn ran past its wall-clock deadline."""


class SubagentTaskFailed(OrionError):
    """A research subagent could not produce findings."""


class ConfigError(OrionError):
    """Invalid or missing configuration."""


class MemoryStoreError(OrionError):
    """Error reading or writing the persistent memory store."""
