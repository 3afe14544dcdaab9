"""Per-request generation options."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from genbridge.errors import ConfigurationError
from genbridge.models import ToolDefinition

ToolChoice = Literal["auto", "required", "none"] | dict[str, Any]


@dataclass(frozen=True)
class Options:
    """Optional generation parameters for one request.

    Values left as ``None`` fall back to the client's configured defaults, and
    then to the provider's own defaults.
    """

    temperature: float | None = None
    #: Hard limit on output tokens. Providers may clamp it further.
    max_tokens: int | None = None
    top_p: float | None = None
    tools: tuple[ToolDefinition, ...] = ()
    tool_choice: ToolChoice | None = None
    #: Ask the provider to emit several tool calls in one turn.
    parallel_tool_calls: bool | None = None
    reasoning_effort: str | None = None
    #: Continuation token from a prior ``GenerateResponse.response_id``.
    previous_response_id: str | None = None
    #: Ask the provider to keep server-side state (Responses API ``store``).
    store: bool | None = None
    stop: tuple[str, ...] = ()
    #: Permit a one-shot non-streaming fallback when streaming is unavailable.
    allow_stream_fallback: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate option shapes early for clear errors."""
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "stop", tuple(self.stop))

        if self.temperature is not None and not (0.0 <= self.temperature <= 2.0):
            raise ConfigurationError(
                f"temperature must be within [0, 2], got {self.temperature}",
                hint="Pass temperature=0.2 for focused output.",
            )
        if self.top_p is not None and not (0.0 < self.top_p <= 1.0):
            raise ConfigurationError(
                f"top_p must be within (0, 1], got {self.top_p}",
                hint="Pass top_p=0.9 or leave it unset.",
            )
        if self.max_tokens is not None and (
            not isinstance(self.max_tokens, int) or self.max_tokens <= 0
        ):
            raise ConfigurationError(
                "max_tokens must be a positive integer",
                hint="Pass max_tokens=1024 or leave it unset.",
            )

        seen: set[str] = set()
        for tool in self.tools:
            if not isinstance(tool, ToolDefinition):
                raise ConfigurationError(
                    "tools must be ToolDefinition instances",
                    hint="Wrap each tool as ToolDefinition(name=..., parameters=...).",
                )
            if tool.name in seen:
                raise ConfigurationError(
                    f"Duplicate tool name: {tool.name!r}",
                    hint="Tool names must be unique within a request.",
                )
            seen.add(tool.name)

        choice = self.tool_choice
        if choice is not None:
            if isinstance(choice, str):
                if choice not in ("auto", "required", "none"):
                    raise ConfigurationError(
                        f"Unknown tool_choice: {choice!r}",
                        hint="Use 'auto', 'required', 'none' or {'name': ...}.",
                    )
            elif not (isinstance(choice, dict) and isinstance(choice.get("name"), str)):
                raise ConfigurationError(
                    "tool_choice dict must carry a string 'name'",
                    hint="Pass tool_choice={'name': 'get_weather'}.",
                )
            elif choice["name"] not in seen:
                raise ConfigurationError(
                    f"tool_choice names unknown tool {choice['name']!r}",
                    hint="Add the tool to Options.tools.",
                )

        if self.previous_response_id is not None and not (
            isinstance(self.previous_response_id, str)
            and self.previous_response_id.strip()
        ):
            raise ConfigurationError(
                "previous_response_id must be a non-empty string",
                hint="Pass the response_id of a prior GenerateResponse.",
            )

    @property
    def forced_tool_name(self) -> str | None:
        """Return the tool name when ``tool_choice`` forces a specific tool."""
        if isinstance(self.tool_choice, dict):
            return self.tool_choice["name"]
        return None
