from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from llm_gateway.errors import UnsupportedProviderError
from llm_gateway.models import ModelConfig
from llm_gateway.providers.anthropic_provider import AnthropicAdapter
from llm_gateway.providers.base import ProviderAdapter
from llm_gateway.providers.google_provider import GoogleAdapter
from llm_gateway.providers.mistral_provider import MistralAdapter
from llm_gateway.providers.openai_provider import OpenAIChatAdapter
from llm_gateway.providers.openai_responses_provider import OpenAIResponsesAdapter

_ADAPTER_TYPES: tuple[type[ProviderAdapter], ...] = (
    OpenAIChatAdapter,
    OpenAIResponsesAdapter,
    AnthropicAdapter,
    GoogleAdapter,
    MistralAdapter,
)

# Provider ids used by other configurations for the same wire dialects.
_ALIASES = {
    "gemini": "google",
    "azure": "openai",
    "local": "openai",
    "vllm": "openai",
}


class AdapterRegistry:
    """Static provider id -> adapter mapping, built once at startup."""

    def __init__(self, adapters: Mapping[str, ProviderAdapter]):
        self._adapters = MappingProxyType(dict(adapters))

    @classmethod
    def default(cls) -> AdapterRegistry:
        adapters: dict[str, ProviderAdapter] = {t.provider: t() for t in _ADAPTER_TYPES}
        for alias, target in _ALIASES.items():
            adapters[alias] = adapters[target]
        return cls(adapters)

    @property
    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, provider: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider.strip().lower())
        if adapter is None:
            raise UnsupportedProviderError(provider)
        return adapter

    def for_model(self, model: ModelConfig) -> ProviderAdapter:
        return self.get(model.provider)


def canonical_provider(provider: str) -> str:
    name = provider.strip().lower()
    return _ALIASES.get(name, name)
