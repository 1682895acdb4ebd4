"""Provider construction helpers."""

from orion.config import Settings
from orion.providers.anthropic import AnthropicProvider
from orion.providers.base import ModelProvider
from orion.providers.openai_compat import OpenAICompatProvider
from orion.providers.router import ProviderRouter

_ALLOWED_PRIMARY_PROVIDERS = {"anthropic", "openai"}


def resolve_primary_provider_name(settings: Settings) -> str:
    value = settings.primary_provider.strip().lower()
    if value in _ALLOWED_PRIMARY_PROVIDERS:
        return value
    return "anthropic"


def _anthropic(settings: Settings) -> AnthropicProvider:
    return AnthropicProvider(settings.anthropic_model)


def _openai(settings: Settings) -> OpenAICompatProvider:
    return OpenAICompatProvider(settings.openai_model)


def build_primary_provider(settings: Settings) -> ModelProvider:
    if resolve_primary_provider_name(settings) == "openai":
        return _openai(settings)
    return _anthropic(settings)


def build_fallback_provider(settings: Settings) -> ModelProvider | None:
    if resolve_primary_provider_name(settings) == "openai":
        if not settings.anthropic_api_key.strip():
            return None
        return _anthropic(settings)
    if not settings.openai_base_url.strip():
        return None
    return _openai(settings)


def build_router(settings: Settings) -> ProviderRouter:
    return ProviderRouter(
        build_primary_provider(settings),
        build_fallback_provider(settings),
        primary_cooldown_seconds=settings.provider_primary_cooldown_seconds,
    )
