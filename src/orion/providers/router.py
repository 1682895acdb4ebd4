"""Primary/fallback model routing.

After the primary lane fails, requests go straight to the fallback for
``primary_cooldown_seconds`` instead of paying the primary's failure latency
on every call of a multi-step turn.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import NamedTuple

from orion.errors import ProviderError
from orion.providers.base import ModelProvider, ModelResponse

logger = logging.getLogger(__name__)


class Generation(NamedTuple):
    response: ModelResponse
    lane: str
    primary_error: str | None


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class ProviderRouter:
    def __init__(
        self,
        primary: ModelProvider,
        fallback: ModelProvider | None = None,
        *,
        primary_cooldown_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.primary_cooldown_seconds = primary_cooldown_seconds
        self._clock = clock
        self._primary_failed_at: float | None = None
        self._primary_error: str | None = None

    def _primary_cooling_down(self) -> bool:
        if self.fallback is None or self._primary_failed_at is None:
            return False
        return self._clock() - self._primary_failed_at < self.primary_cooldown_seconds

    async def generate(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, object]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> Generation:
        if self._primary_cooling_down():
            primary_error = self._primary_error or "primary cooling down"
        else:
            try:
                response = await self.primary.generate(messages, tools, temperature, max_tokens)
            except Exception as exc:
                primary_error = _describe(exc)
                self._primary_failed_at = self._clock()
                self._primary_error = primary_error
                logger.warning("Primary provider failed error=%s", primary_error)
            else:
                self._primary_failed_at = None
                return Generation(response, "primary", None)

        fallback = self.fallback
        if fallback is None:
            raise ProviderError(primary_error, retryable=True)
        try:
            response = await fallback.generate(messages, tools, temperature, max_tokens)
        except Exception as exc:
            raise ProviderError(
                f"all providers failed: primary={primary_error}, fallback={_describe(exc)}",
                retryable=True,
            ) from exc
        return Generation(response, "fallback", primary_error)

    async def health(self) -> dict[str, bool]:
        lanes = {"primary": self.primary}
        if self.fallback is not None:
            lanes["fallback"] = self.fallback
        checks = await asyncio.gather(
            *(provider.health_check() for provider in lanes.values()), return_exceptions=True
        )
        return {lane: ok is True for lane, ok in zip(lanes, checks, strict=True)}
