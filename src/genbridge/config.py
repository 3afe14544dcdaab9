"""Configuration: Frozen Config with explicit provider/model requirements."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from types import MappingProxyType
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from genbridge.errors import ConfigurationError
from genbridge.providers.base import API_KEY_ENV_VARS, Provider
from genbridge.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Mapping

load_dotenv()

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"


@dataclass(frozen=True)
class Config:
    """Immutable configuration for one genbridge client.

    Provider and model are required; genbridge does not guess what you want.
    API keys are auto-resolved from the provider's standard environment
    variable.

    Example:
        config = Config(provider="anthropic", model="claude-sonnet-4-5")
        # API key is automatically resolved from ANTHROPIC_API_KEY
    """

    provider: Provider | str
    model: str
    #: Auto-resolved from the provider's environment variable when *None*.
    api_key: str | None = None
    #: Provider default when *None* (useful for proxies and local servers).
    base_url: str | None = None
    default_max_tokens: int | None = None
    default_temperature: float | None = None
    timeout_s: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    session_ttl_s: float = 1800.0
    #: How long an endpoint whose streaming failed goes straight to fallback.
    stream_disable_ttl_s: float = 1800.0
    anthropic_version: str = DEFAULT_ANTHROPIC_VERSION
    #: Forget a conversation's continuation state when the provider rejects it.
    reset_session_on_continuation_error: bool = False
    extra_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Resolve the provider and API key, then validate."""
        provider = Provider.resolve(self.provider)
        object.__setattr__(self, "provider", provider)
        object.__setattr__(
            self, "extra_headers", MappingProxyType(dict(self.extra_headers))
        )

        if not isinstance(self.model, str) or not self.model.strip():
            raise ConfigurationError(
                "model is required",
                hint="Pass the provider's model name, e.g. model='gpt-4o-mini'.",
            )
        if self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="This bounds each HTTP exchange in seconds.",
            )
        if self.session_ttl_s <= 0 or self.stream_disable_ttl_s <= 0:
            raise ConfigurationError(
                "session_ttl_s and stream_disable_ttl_s must be > 0",
                hint="These control how long per-client session state is kept.",
            )
        if self.default_max_tokens is not None and self.default_max_tokens <= 0:
            raise ConfigurationError(
                f"default_max_tokens must be > 0, got {self.default_max_tokens}",
                hint="Leave it unset to use the provider default.",
            )
        if self.default_temperature is not None and not (
            0.0 <= self.default_temperature <= 2.0
        ):
            raise ConfigurationError(
                f"default_temperature must be within [0, 2], got {self.default_temperature}",
                hint="Leave it unset to use the provider default.",
            )

        env_var = API_KEY_ENV_VARS[provider]
        if env_var is None:
            return

        # Auto-resolve API key from environment if not provided
        if self.api_key is None:
            object.__setattr__(self, "api_key", os.environ.get(env_var))

        if not self.api_key:
            raise ConfigurationError(
                f"API key required for {provider.value}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )

    @property
    def provider_name(self) -> str:
        return Provider.resolve(self.provider).value

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider_name!r}, model={self.model!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, "
            f"base_url={self.base_url!r})"
        )

    __repr__ = __str__
