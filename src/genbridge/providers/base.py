"""Provider protocol: the pure wire seam every adapter implements."""

from __future__ import annotations

from enum import Enum
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from genbridge.aggregator import StreamAggregator
from genbridge.capabilities import Capabilities, for_model
from genbridge.errors import ConfigurationError
from genbridge.frames import parse_frames
from genbridge.models import Choice, GenerateResponse, Message, normalize_role
from genbridge.providers._errors import provider_error

if TYPE_CHECKING:
    from collections.abc import Mapping

    from genbridge.aggregator import StreamDecoder
    from genbridge.config import Config
    from genbridge.errors import ProviderError
    from genbridge.frames import Framing
    from genbridge.models import GenerateRequest
    from genbridge.session import SessionState

logger = logging.getLogger(__name__)


class Provider(Enum):
    """Closed set of supported wire protocols."""

    OPENAI = "openai"
    OPENAI_RESPONSES = "openai-responses"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    GROK = "grok"
    OLLAMA = "ollama"

    @classmethod
    def resolve(cls, value: Provider | str) -> Provider:
        """Return the member for *value* (a member or its string value)."""
        if isinstance(value, Provider):
            return value
        if isinstance(value, str):
            key = value.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == key:
                    return member
        raise ConfigurationError(
            f"Unknown provider: {value!r}",
            hint=f"Supported providers: {', '.join(repr(p.value) for p in cls)}",
        )


# Provider-specific API key environment variable names. None means no key.
API_KEY_ENV_VARS: dict[Provider, str | None] = {
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.OPENAI_RESPONSES: "OPENAI_API_KEY",
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.GEMINI: "GEMINI_API_KEY",
    Provider.GROK: "XAI_API_KEY",
    Provider.OLLAMA: None,
}


@runtime_checkable
class ProviderAdapter(Protocol):
    """Pure translation between the normalized model and one wire format.

    Adapters perform no I/O. The client owns transport, retries, sessions
    and the call lifecycle.
    """

    provider: Provider
    framing: Framing
    default_base_url: str

    @property
    def name(self) -> str:
        """Short provider name used in errors and observer records."""
        ...

    def endpoint(self, config: Config, *, stream: bool) -> str:
        """Return the absolute URL for a call."""
        ...

    def headers(self, config: Config, *, stream: bool) -> dict[str, str]:
        """Return request headers, including authentication."""
        ...

    def capabilities(self, model: str) -> Capabilities:
        """Return the feature flags for *model*."""
        ...

    def to_wire_request(
        self, request: GenerateRequest, config: Config, *, stream: bool
    ) -> dict[str, Any]:
        """Build the provider payload for *request*."""
        ...

    def from_wire_response(self, body: bytes) -> GenerateResponse:
        """Parse a complete non-streaming body."""
        ...

    def new_decoder(self) -> StreamDecoder:
        """Return a fresh per-stream frame decoder."""
        ...

    def parse_error(
        self, status_code: int, body: bytes, headers: Mapping[str, str] | None
    ) -> ProviderError:
        """Map a non-2xx reply to a ``ProviderError``."""
        ...


class BaseAdapter:
    """Shared adapter plumbing; subclasses supply the wire translation."""

    provider: Provider
    framing: Framing = "sse"
    default_base_url: str = ""
    base_capabilities: Capabilities = Capabilities()

    @property
    def name(self) -> str:
        return self.provider.value

    @property
    def api_key_env(self) -> str | None:
        return API_KEY_ENV_VARS[self.provider]

    def base_url(self, config: Config) -> str:
        return (config.base_url or self.default_base_url).rstrip("/")

    def capabilities(self, model: str) -> Capabilities:
        return for_model(self.base_capabilities, model)

    def auth_headers(self, config: Config) -> dict[str, str]:
        if not config.api_key:
            return {}
        return {"Authorization": f"Bearer {config.api_key}"}

    def headers(self, config: Config, *, stream: bool) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream and self.framing == "sse" else "application/json",
        }
        headers.update(self.auth_headers(config))
        headers.update(config.extra_headers)
        return headers

    def parse_error(
        self, status_code: int, body: bytes, headers: Mapping[str, str] | None
    ) -> ProviderError:
        return provider_error(
            provider=self.name,
            status_code=status_code,
            body=body,
            headers=headers,
            env_var=self.api_key_env,
        )

    def error_from_payload(self, payload: Any) -> ProviderError:
        """Map an in-stream error envelope."""
        return provider_error(
            provider=self.name,
            status_code=None,
            body=None,
            payload=payload,
            env_var=self.api_key_env,
        )

    def new_decoder(self) -> StreamDecoder:
        raise NotImplementedError

    def replay_stream(self, body: bytes) -> GenerateResponse | None:
        """Rebuild a response from a complete streamed body.

        Some proxies stream even when asked not to; the body is then fed
        through the regular decoder. Returns ``None`` when no frame produced
        any output.
        """
        frames = parse_frames(body, self.framing)
        if not frames:
            return None
        decoder = self.new_decoder()
        agg = StreamAggregator()
        choices: dict[int, Choice] = {}
        for frame in frames:
            result = decoder.decode(frame, agg)
            for choice in result.choices:
                choices[choice.index] = choice
            if result.done:
                break
        for choice in agg.finalize_all(""):
            choices.setdefault(choice.index, choice)
        if not choices:
            return None
        logger.debug("Rebuilt %s response from a streamed body", self.name)
        return agg.response([choices[i] for i in sorted(choices)])

    @staticmethod
    def bare_message(payload: Any) -> GenerateResponse | None:
        """Parse the minimal ``{"content": "...", "role": ...}`` reply shape."""
        if not isinstance(payload, dict) or not isinstance(payload.get("content"), str):
            return None
        message = Message(
            role=normalize_role(payload.get("role") if isinstance(payload.get("role"), str) else None),
            content=payload["content"],
        )
        finish = payload.get("finish_reason")
        return GenerateResponse(
            choices=(
                Choice(
                    index=0,
                    message=message,
                    finish_reason=finish if isinstance(finish, str) else "",
                ),
            ),
            model=payload.get("model") if isinstance(payload.get("model"), str) else "",
            response_id=payload.get("id") if isinstance(payload.get("id"), str) else None,
        )

    def continue_session(
        self, wire: dict[str, Any], state: SessionState | None
    ) -> dict[str, Any] | None:
        """Return *wire* rewritten to continue *state*, or ``None`` if unsupported."""
        return None

    def session_input(self, wire: dict[str, Any]) -> list[Any] | None:
        """Return the input items to remember for continuation, if any."""
        return None
