"""Anthropic Messages API adapter."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from genbridge.aggregator import DecodeResult, StreamAggregator
from genbridge.capabilities import Capabilities
from genbridge.errors import ProtocolError, UnsupportedContentError
from genbridge.models import Choice, GenerateResponse, Message, ToolCall, Usage
from genbridge.providers._utils import as_int, loads, tool_output_text, unparseable
from genbridge.providers.base import BaseAdapter, Provider

if TYPE_CHECKING:
    from genbridge.config import Config
    from genbridge.frames import Frame
    from genbridge.models import ContentItem, GenerateRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 8192
MAX_TOKENS_LIMIT = 200_000

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


def _normalize_stop_reason(stop_reason: Any) -> str:
    """Map Anthropic stop_reason onto the shared finish vocabulary."""
    if not stop_reason:
        return ""
    reason = str(stop_reason).lower()
    return _STOP_REASONS.get(reason, reason)


def parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage(
        prompt_tokens=as_int(raw.get("input_tokens")),
        completion_tokens=as_int(raw.get("output_tokens")),
        cached_tokens=as_int(raw.get("cache_read_input_tokens")),
    )


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic requires strict user/assistant alternation; tool results are
    user turns and often sit next to the following prompt.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        messages[-1]["content"] = messages[-1]["content"] + msg["content"]
    else:
        messages.append(msg)


class AnthropicDecoder:
    """Classify Messages API stream events into choice 0."""

    def __init__(self, adapter: AnthropicAdapter) -> None:
        self._adapter = adapter
        self._input_tokens = 0
        self._cached_tokens = 0
        self._stop_reason = ""

    def decode(self, frame: Frame, agg: StreamAggregator) -> DecodeResult:
        event = loads(frame.data, provider=self._adapter.name, what="stream frame")
        if not isinstance(event, dict):
            return DecodeResult()
        kind = event.get("type") or frame.event or ""

        if kind == "error" or (not kind and event.get("error") is not None):
            raise self._adapter.error_from_payload(event)
        if kind == "message_start":
            message = event.get("message") or {}
            if message.get("id"):
                agg.response_id = message["id"]
            if message.get("model"):
                agg.model = message["model"]
            agg.set_role(0, message.get("role") or "assistant")
            usage = parse_usage(message.get("usage"))
            if usage is not None:
                self._input_tokens = usage.prompt_tokens
                self._cached_tokens = usage.cached_tokens
                agg.update_usage(usage)
            return DecodeResult()
        if kind == "content_block_start":
            position = as_int(event.get("index"))
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                agg.open_tool(0, position, id=block.get("id"), name=block.get("name"))
            elif block.get("type") == "text" and block.get("text"):
                agg.append_text(0, block["text"])
                return DecodeResult(delta=block["text"])
            return DecodeResult()
        if kind == "content_block_delta":
            position = as_int(event.get("index"))
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                text = delta.get("text") or ""
                agg.append_text(0, text)
                return DecodeResult(delta=text if text.strip() else "")
            if delta.get("type") == "input_json_delta":
                agg.append_tool_arguments(0, position, delta.get("partial_json") or "")
            return DecodeResult()
        if kind == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = _normalize_stop_reason(delta["stop_reason"])
            usage = event.get("usage")
            if isinstance(usage, dict):
                agg.update_usage(
                    Usage(
                        prompt_tokens=as_int(usage.get("input_tokens")) or self._input_tokens,
                        completion_tokens=as_int(usage.get("output_tokens")),
                        cached_tokens=self._cached_tokens,
                    )
                )
            return DecodeResult()
        if kind == "message_stop":
            return DecodeResult(choices=[agg.finalize(0, self._stop_reason or "stop")], done=True)
        return DecodeResult()


class AnthropicAdapter(BaseAdapter):
    """Messages API (``/v1/messages``)."""

    provider = Provider.ANTHROPIC
    default_base_url = "https://api.anthropic.com/v1"
    base_capabilities = Capabilities(
        tools=True, streaming=True, multimodal=True, parallel_tools=True, instructions=True
    )

    def endpoint(self, config: Config, *, stream: bool) -> str:
        return f"{self.base_url(config)}/messages"

    def auth_headers(self, config: Config) -> dict[str, str]:
        headers = {"anthropic-version": config.anthropic_version}
        if config.api_key:
            headers["x-api-key"] = config.api_key
        return headers

    def to_wire_request(
        self, request: GenerateRequest, config: Config, *, stream: bool
    ) -> dict[str, Any]:
        opts = request.effective_options()
        system: list[str] = []
        messages: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role in ("system", "developer"):
                text = message.text()
                if text:
                    system.append(text)
                continue
            converted = self._message(message)
            if converted["content"]:
                _append_message(messages, converted)

        payload: dict[str, Any] = {"model": config.model, "messages": messages}
        if system:
            payload["system"] = "\n\n".join(system)
        temperature = opts.temperature if opts.temperature is not None else config.default_temperature
        if temperature is not None:
            # Anthropic accepts [0, 1].
            payload["temperature"] = min(temperature, 1.0)
        if opts.top_p is not None:
            payload["top_p"] = opts.top_p
        if opts.stop:
            payload["stop_sequences"] = list(opts.stop)
        if opts.tools:
            payload["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.json_schema(),
                }
                for t in opts.tools
            ]
        tool_choice = self._tool_choice(opts.tool_choice, opts.forced_tool_name)
        if opts.tools and opts.parallel_tool_calls is False:
            tool_choice = {**(tool_choice or {"type": "auto"}), "disable_parallel_tool_use": True}
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice
        if stream:
            payload["stream"] = True
        # Clamp last so no earlier default can exceed the API limit.
        max_tokens = opts.max_tokens or config.default_max_tokens or DEFAULT_MAX_TOKENS
        payload["max_tokens"] = min(max_tokens, MAX_TOKENS_LIMIT)
        return payload

    @staticmethod
    def _tool_choice(choice: Any, forced: str | None) -> dict[str, Any] | None:
        if forced:
            return {"type": "tool", "name": forced}
        if choice == "auto":
            return {"type": "auto"}
        if choice == "required":
            return {"type": "any"}
        if choice == "none":
            return {"type": "none"}
        return None

    def _message(self, message: Message) -> dict[str, Any]:
        if message.is_tool_result:
            return {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id or "",
                        "content": tool_output_text(message.text()),
                    }
                ],
            }
        blocks = [self._block(item) for item in message.primary_items()]
        blocks = [b for b in blocks if b.get("type") != "text" or b.get("text")]
        for tc in message.tool_calls:
            blocks.append(
                {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
            )
        role = "assistant" if message.role == "assistant" else "user"
        return {"role": role, "content": blocks}

    def _block(self, item: ContentItem) -> dict[str, Any]:
        if item.is_text:
            return {"type": "text", "text": item.text or ""}
        if item.url:
            raise UnsupportedContentError(
                f"{self.name} does not accept {item.type} URLs",
                provider=self.name,
                hint="Download the content and pass it with ContentItem.from_bytes.",
            )
        if item.type == "image" and item.data:
            return {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": item.mime_type or "image/png",
                    "data": item.data,
                },
            }
        if item.type == "pdf" and item.data:
            return {
                "type": "document",
                "source": {"type": "base64", "media_type": "application/pdf", "data": item.data},
            }
        raise UnsupportedContentError(
            f"{self.name} cannot send {item.type} content",
            provider=self.name,
            hint="Anthropic accepts text, base64 images and PDFs.",
        )

    def from_wire_response(self, body: bytes) -> GenerateResponse:
        try:
            payload = loads(body, provider=self.name)
        except ProtocolError:
            replayed = self.replay_stream(body)
            if replayed is None:
                raise
            return replayed
        if isinstance(payload, dict):
            if payload.get("type") == "error" or (
                "content" not in payload and payload.get("error") is not None
            ):
                raise self.error_from_payload(payload)
            if isinstance(payload.get("content"), list):
                return self._parse(payload)
            inner = payload.get("message") or payload.get("response")
            if isinstance(inner, dict) and isinstance(inner.get("content"), list):
                return self._parse(inner)
        bare = self.bare_message(payload)
        if bare is not None:
            return bare
        raise unparseable(body, provider=self.name)

    def _parse(self, payload: dict[str, Any]) -> GenerateResponse:
        texts: list[str] = []
        calls: list[ToolCall] = []
        for block in payload["content"]:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                texts.append(block.get("text") or "")
            elif block.get("type") == "tool_use":
                raw_input = block.get("input")
                calls.append(
                    ToolCall.from_arguments(
                        block.get("id") or "",
                        block.get("name") or "",
                        raw_input if isinstance(raw_input, dict) else {},
                    )
                )
        message = Message(role="assistant", content="".join(texts), tool_calls=tuple(calls))
        return GenerateResponse(
            choices=(
                Choice(
                    index=0,
                    message=message,
                    finish_reason=_normalize_stop_reason(payload.get("stop_reason")),
                ),
            ),
            usage=parse_usage(payload.get("usage")),
            model=payload.get("model") or "",
            response_id=payload.get("id"),
        )

    def new_decoder(self) -> AnthropicDecoder:
        return AnthropicDecoder(self)
