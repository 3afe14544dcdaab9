"""Stream aggregation state machine.

Provider decoders classify frames and feed this aggregator; it accumulates
per-choice text and per-position tool-call fragments and turns them into
``Choice`` objects when a choice finishes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any, Protocol

from genbridge.models import Choice, GenerateResponse, Message, ToolCall, normalize_role

if TYPE_CHECKING:
    from genbridge.frames import Frame
    from genbridge.models import Usage

logger = logging.getLogger(__name__)


@dataclass
class _ToolAggregate:
    position: int
    id: str = ""
    name: str = ""
    fragments: list[str] = field(default_factory=list)
    # Set when the provider delivers arguments as a decoded object.
    arguments: dict[str, Any] | None = None

    def build(self) -> ToolCall:
        if self.arguments is not None and not self.fragments:
            return ToolCall.from_arguments(self.id, self.name, self.arguments)
        return ToolCall.from_raw(self.id, self.name, "".join(self.fragments))


@dataclass
class _ChoiceAggregate:
    role: str = ""
    text: list[str] = field(default_factory=list)
    tools: dict[int, _ToolAggregate] = field(default_factory=dict)

    def build(self, index: int, finish_reason: str) -> Choice:
        calls = tuple(self.tools[pos].build() for pos in sorted(self.tools))
        message = Message(
            role=self.role or "assistant",
            content="".join(self.text),
            tool_calls=calls,
        )
        return Choice(index=index, message=message, finish_reason=finish_reason)


class StreamAggregator:
    """Accumulate partial choices for one stream.

    Aggregates are keyed by choice index; tool aggregates inside a choice are
    keyed by the tool position announced by the provider, never by id.
    Finalizing a choice discards its aggregate, so a later frame for the same
    index starts from scratch.
    """

    def __init__(self) -> None:
        self._choices: dict[int, _ChoiceAggregate] = {}
        self._finalized: set[int] = set()
        self.pending_usage: Usage | None = None
        self.model = ""
        self.response_id: str | None = None
        self.last_response: GenerateResponse | None = None

    def _choice(self, index: int) -> _ChoiceAggregate:
        agg = self._choices.get(index)
        if agg is None:
            if index in self._finalized:
                logger.debug("Choice %d reopened after finalization", index)
            agg = _ChoiceAggregate()
            self._choices[index] = agg
        return agg

    def _tool(
        self, index: int, position: int, id: str | None, name: str | None  # noqa: A002
    ) -> _ToolAggregate:
        tools = self._choice(index).tools
        tool = tools.get(position)
        if tool is None:
            tool = _ToolAggregate(position=position)
            tools[position] = tool
        if id:
            tool.id = id
        if name:
            tool.name = name
        return tool

    @property
    def active(self) -> bool:
        """Whether any choice has unfinalized state."""
        return bool(self._choices)

    def is_open(self, index: int) -> bool:
        return index in self._choices

    def set_role(self, index: int, role: str | None) -> None:
        agg = self._choice(index)
        if role:
            agg.role = normalize_role(role)

    def append_text(self, index: int, text: str) -> None:
        self._choice(index).text.append(text)

    def open_tool(
        self,
        index: int,
        position: int,
        *,
        id: str | None = None,  # noqa: A002
        name: str | None = None,
    ) -> None:
        self._tool(index, position, id, name)

    def append_tool_arguments(
        self,
        index: int,
        position: int,
        fragment: str,
        *,
        id: str | None = None,  # noqa: A002
        name: str | None = None,
    ) -> None:
        self._tool(index, position, id, name).fragments.append(fragment)

    def add_tool_call(
        self,
        index: int,
        *,
        id: str,  # noqa: A002
        name: str,
        arguments: dict[str, Any] | None,
        position: int | None = None,
    ) -> None:
        """Record a tool call that arrived whole rather than in fragments."""
        if position is None:
            position = self.next_tool_position(index)
        self._tool(index, position, id, name).arguments = dict(arguments or {})

    def next_tool_position(self, index: int) -> int:
        tools = self._choice(index).tools
        return max(tools) + 1 if tools else 0

    def has_tool_calls(self, index: int) -> bool:
        agg = self._choices.get(index)
        return bool(agg and agg.tools)

    def update_usage(self, usage: Usage | None) -> None:
        """Remember the latest usage; reported once when the call ends."""
        if usage is not None and not usage.is_empty():
            self.pending_usage = usage

    def finalize(self, index: int, finish_reason: str) -> Choice:
        """Build the finished ``Choice`` for *index* and discard its state."""
        agg = self._choices.pop(index, None) or _ChoiceAggregate()
        self._finalized.add(index)
        return agg.build(index, finish_reason)

    def finalize_all(self, finish_reason: str) -> list[Choice]:
        """Finalize every open choice in index order."""
        return [self.finalize(i, finish_reason) for i in sorted(self._choices)]

    def snapshot(self) -> list[Choice]:
        """Build unfinished choices without discarding state."""
        return [self._choices[i].build(i, "") for i in sorted(self._choices)]

    def response(self, choices: list[Choice]) -> GenerateResponse:
        return GenerateResponse(
            choices=tuple(choices),
            usage=self.pending_usage,
            model=self.model,
            response_id=self.response_id,
        )

    def partial_response(self) -> GenerateResponse | None:
        """Return the last emitted response, or a snapshot of open choices."""
        if self.last_response is not None:
            return self.last_response
        if not self._choices:
            return None
        return self.response(self.snapshot())


@dataclass
class DecodeResult:
    """What one frame contributed."""

    choices: list[Choice] = field(default_factory=list)
    #: Text to forward to the observer's delta tap.
    delta: str = ""
    #: The provider signalled the end of the stream.
    done: bool = False


class StreamDecoder(Protocol):
    """Per-provider frame classifier."""

    def decode(self, frame: Frame, agg: StreamAggregator) -> DecodeResult:
        """Apply *frame* to *agg*.

        Raises ``ProtocolError`` for malformed frames and ``ProviderError`` for
        error envelopes. Unknown frame kinds are ignored.
        """
        ...
