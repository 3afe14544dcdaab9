"""xAI Grok adapter: the OpenAI chat wire format on a different host."""

from __future__ import annotations

from genbridge.capabilities import Capabilities
from genbridge.providers.base import Provider
from genbridge.providers.openai import OpenAIAdapter


class GrokAdapter(OpenAIAdapter):
    provider = Provider.GROK
    default_base_url = "https://api.x.ai/v1"
    base_capabilities = Capabilities(tools=True, streaming=True)
