"""Normalized data model shared by every provider adapter.

All entities are created per call and discarded at call end; none are shared
across calls.
"""

from __future__ import annotations

import base64
from copy import deepcopy
from dataclasses import dataclass, field
import json
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel

from genbridge.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from genbridge.options import Options

Role = Literal["system", "developer", "user", "assistant", "tool"]
ROLES: frozenset[str] = frozenset({"system", "developer", "user", "assistant", "tool"})
# Legacy spelling accepted on input.
_ROLE_ALIASES = {"function": "tool", "model": "assistant"}

ContentType = Literal["text", "image", "file", "raw", "audio", "video", "pdf"]
_CONTENT_TYPES = frozenset({"text", "image", "file", "raw", "audio", "video", "pdf"})


def normalize_role(role: str | None, default: str = "assistant") -> str:
    """Map a wire role onto the normalized vocabulary."""
    if not role:
        return default
    value = role.strip().lower()
    value = _ROLE_ALIASES.get(value, value)
    return value if value in ROLES else default


@dataclass(frozen=True)
class ContentItem:
    """One typed piece of message content.

    ``data`` holds base64 for inline payloads; ``url`` a remote reference;
    ``file_id`` a provider-side upload id.
    """

    type: ContentType = "text"
    text: str | None = None
    data: str | None = None
    url: str | None = None
    mime_type: str | None = None
    file_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.type not in _CONTENT_TYPES:
            raise ConfigurationError(
                f"Unknown content item type: {self.type!r}",
                hint=f"Use one of: {', '.join(sorted(_CONTENT_TYPES))}.",
            )

    @classmethod
    def from_text(cls, text: str) -> ContentItem:
        return cls(type="text", text=text)

    @classmethod
    def from_url(cls, url: str, mime_type: str | None = None) -> ContentItem:
        return cls(type=_type_for_mime(mime_type, "image"), url=url, mime_type=mime_type)

    @classmethod
    def from_bytes(
        cls, data: bytes, mime_type: str, *, name: str | None = None
    ) -> ContentItem:
        encoded = base64.b64encode(data).decode("ascii")
        return cls(
            type=_type_for_mime(mime_type, "file"),
            data=encoded,
            mime_type=mime_type,
            name=name,
        )

    @classmethod
    def from_base64(
        cls, data: str, mime_type: str, *, name: str | None = None
    ) -> ContentItem:
        return cls(
            type=_type_for_mime(mime_type, "file"),
            data=data,
            mime_type=mime_type,
            name=name,
        )

    @property
    def is_text(self) -> bool:
        return self.type in ("text", "raw") and self.data is None and self.url is None

    def data_uri(self) -> str:
        """Return an RFC 2397 ``data:`` URI for inline content."""
        mime = self.mime_type or "application/octet-stream"
        return f"data:{mime};base64,{self.data or ''}"


def _type_for_mime(mime_type: str | None, default: ContentType) -> ContentType:
    if not mime_type:
        return default
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("audio/"):
        return "audio"
    if mime_type.startswith("video/"):
        return "video"
    if mime_type == "application/pdf":
        return "pdf"
    return "file"


def decode_arguments(raw: str) -> dict[str, Any]:
    """Decode tool-call argument text.

    Empty text decodes to ``{}``. Text that is not a JSON object is kept
    verbatim under ``"raw"`` so callers can still recover it.
    """
    if not raw.strip():
        # Tools without parameters send no argument text at all.
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {"raw": raw}
    if not isinstance(value, dict):
        return {"raw": raw}
    return value


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model.

    ``raw_arguments`` is the undecoded argument text exactly as received.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""

    @classmethod
    def from_raw(cls, id: str, name: str, raw: str) -> ToolCall:  # noqa: A002
        return cls(id=id, name=name, arguments=decode_arguments(raw), raw_arguments=raw)

    @classmethod
    def from_arguments(
        cls,
        id: str,  # noqa: A002
        name: str,
        arguments: dict[str, Any] | None,
    ) -> ToolCall:
        args = dict(arguments or {})
        return cls(id=id, name=name, arguments=args, raw_arguments=json.dumps(args))


@dataclass(frozen=True)
class Message:
    """A conversational message turn.

    When both ``content`` and ``items`` are set, ``items`` wins.
    """

    role: str
    content: str = ""
    items: tuple[ContentItem, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        role = _ROLE_ALIASES.get(self.role, self.role)
        if role not in ROLES:
            raise ConfigurationError(
                f"Unknown message role: {self.role!r}",
                hint="Use system, developer, user, assistant or tool.",
            )
        object.__setattr__(self, "role", role)
        object.__setattr__(self, "items", tuple(self.items))
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str = "", *items: ContentItem) -> Message:
        return cls(role="user", content=content, items=items)

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: Iterable[ToolCall] = ()
    ) -> Message:
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool_result(
        cls, tool_call_id: str, content: str, *, name: str | None = None
    ) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)

    @property
    def is_tool_result(self) -> bool:
        return bool(self.tool_call_id) or self.role == "tool"

    def primary_items(self) -> tuple[ContentItem, ...]:
        """Return the items that represent this message's content."""
        if self.items:
            return self.items
        if self.content:
            return (ContentItem.from_text(self.content),)
        return ()

    def text(self) -> str:
        """Concatenate the text of the primary items."""
        return "".join(item.text or "" for item in self.primary_items() if item.is_text)


@dataclass(frozen=True)
class ToolDefinition:
    """A function the model may call.

    ``parameters`` may be a full JSON Schema (has a ``type`` key), a bare
    ``{property: schema}`` map, or a Pydantic model class.
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] | type[BaseModel] | None = None
    output_schema: dict[str, Any] | None = None
    required: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError(
                "Tool definitions need a non-empty name",
                hint="Pass ToolDefinition(name='get_weather', ...).",
            )
        params = self.parameters
        if params is not None and not (
            isinstance(params, dict)
            or (isinstance(params, type) and issubclass(params, BaseModel))
        ):
            raise ConfigurationError(
                f"Tool {self.name!r} parameters must be a dict or Pydantic model class",
                hint="Pass a JSON Schema dict or a BaseModel subclass.",
            )
        object.__setattr__(self, "required", tuple(self.required))

    def json_schema(self) -> dict[str, Any]:
        """Return the parameter schema as a JSON Schema object."""
        params = self.parameters
        if isinstance(params, type) and issubclass(params, BaseModel):
            return params.model_json_schema()
        if isinstance(params, dict) and "type" in params:
            return deepcopy(params)
        schema: dict[str, Any] = {"type": "object", "properties": deepcopy(params or {})}
        if self.required:
            schema["required"] = list(self.required)
        return schema


@dataclass(frozen=True)
class Usage:
    """Token counts reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0

    def __post_init__(self) -> None:
        if not self.total_tokens and (self.prompt_tokens or self.completion_tokens):
            object.__setattr__(
                self, "total_tokens", self.prompt_tokens + self.completion_tokens
            )

    def is_empty(self) -> bool:
        return not (
            self.prompt_tokens
            or self.completion_tokens
            or self.total_tokens
            or self.cached_tokens
            or self.reasoning_tokens
        )


@dataclass(frozen=True)
class Choice:
    """One candidate assistant turn."""

    index: int
    message: Message
    finish_reason: str = ""


@dataclass(frozen=True)
class GenerateResponse:
    """Normalized reply to one generate call, or one stream increment.

    ``fallback`` is set when a streaming call was served by the
    non-streaming path.
    """

    choices: tuple[Choice, ...] = ()
    usage: Usage | None = None
    model: str = ""
    response_id: str | None = None
    fallback: bool = False
    fallback_reason: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", tuple(self.choices))

    def text(self) -> str:
        """Return the text of the first choice (empty when there is none)."""
        if not self.choices:
            return ""
        return self.choices[0].message.text()

    def tool_calls(self) -> list[ToolCall]:
        return [tc for choice in self.choices for tc in choice.message.tool_calls]

    @property
    def finish_reason(self) -> str:
        return self.choices[0].finish_reason if self.choices else ""


@dataclass(frozen=True)
class StreamEvent:
    """One item on a stream: a finalized increment or an error."""

    response: GenerateResponse | None = None
    error: BaseException | None = None

    def __post_init__(self) -> None:
        if (self.response is None) == (self.error is None):
            raise ValueError("StreamEvent needs exactly one of response or error")

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class GenerateRequest:
    """An immutable, provider-neutral generate request.

    ``conversation_id`` keys the client's session store for providers that
    support server-side continuation.
    """

    messages: tuple[Message, ...]
    options: Options | None = None
    conversation_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", tuple(self.messages))

    def effective_options(self) -> Options:
        """Return the request options, defaulting to an empty ``Options``."""
        if self.options is not None:
            return self.options
        from genbridge.options import Options

        return Options()
