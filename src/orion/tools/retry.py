"""Retry policy for tool calls."""

from dataclasses import dataclass

from orion.tools.types import ToolOutcome


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))

    def should_retry(self, outcome: ToolOutcome, attempt: int) -> bool:
        if outcome.success or attempt >= self.max_attempts:
            return False
        if outcome.error_kind == "invalid_input":
            return False
        return outcome.retryable
