"""Provider adapters."""

from __future__ import annotations

from .anthropic import AnthropicAdapter
from .base import API_KEY_ENV_VARS, BaseAdapter, Provider, ProviderAdapter
from .gemini import GeminiAdapter
from .grok import GrokAdapter
from .ollama import OllamaAdapter
from .openai import OpenAIAdapter
from .openai_responses import ResponsesAdapter

_ADAPTERS: dict[Provider, type[BaseAdapter]] = {
    Provider.OPENAI: OpenAIAdapter,
    Provider.OPENAI_RESPONSES: ResponsesAdapter,
    Provider.ANTHROPIC: AnthropicAdapter,
    Provider.GEMINI: GeminiAdapter,
    Provider.GROK: GrokAdapter,
    Provider.OLLAMA: OllamaAdapter,
}


def adapter_for(provider: Provider | str) -> BaseAdapter:
    """Return a fresh adapter for *provider*."""
    return _ADAPTERS[Provider.resolve(provider)]()


__all__ = [
    "API_KEY_ENV_VARS",
    "AnthropicAdapter",
    "BaseAdapter",
    "GeminiAdapter",
    "GrokAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "Provider",
    "ProviderAdapter",
    "ResponsesAdapter",
    "adapter_for",
]
