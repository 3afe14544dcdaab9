"""OpenAI Chat Completions adapter (also the base for compatible APIs)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from genbridge.aggregator import DecodeResult, StreamAggregator
from genbridge.capabilities import Capabilities
from genbridge.errors import ProtocolError, UnsupportedContentError
from genbridge.models import (
    Choice,
    ContentItem,
    GenerateResponse,
    Message,
    ToolCall,
    Usage,
    normalize_role,
)
from genbridge.providers._utils import as_int, loads, tool_output_text, unparseable
from genbridge.providers.base import BaseAdapter, Provider

if TYPE_CHECKING:
    from genbridge.config import Config
    from genbridge.frames import Frame
    from genbridge.models import GenerateRequest
    from genbridge.options import Options

logger = logging.getLogger(__name__)

_FINISH_ALIASES = {"function_call": "tool_calls"}


def normalize_finish_reason(reason: str | None) -> str:
    if not reason:
        return ""
    return _FINISH_ALIASES.get(reason, reason)


def parse_usage(raw: Any) -> Usage | None:
    """Map a Chat Completions ``usage`` object."""
    if not isinstance(raw, dict):
        return None
    prompt_details = raw.get("prompt_tokens_details")
    completion_details = raw.get("completion_tokens_details")
    return Usage(
        prompt_tokens=as_int(raw.get("prompt_tokens")),
        completion_tokens=as_int(raw.get("completion_tokens")),
        total_tokens=as_int(raw.get("total_tokens")),
        cached_tokens=as_int(prompt_details.get("cached_tokens"))
        if isinstance(prompt_details, dict)
        else 0,
        reasoning_tokens=as_int(completion_details.get("reasoning_tokens"))
        if isinstance(completion_details, dict)
        else 0,
    )


def _content_text(content: Any) -> str:
    """Text of a message ``content`` that is a string or a list of parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    return ""


class ChatDecoder:
    """Classify Chat Completions stream chunks."""

    def __init__(self, adapter: BaseAdapter) -> None:
        self._adapter = adapter
        # (choice, tool id) -> position, for chunks that omit the tool index.
        self._positions: dict[tuple[int, str], int] = {}

    def decode(self, frame: Frame, agg: StreamAggregator) -> DecodeResult:
        chunk = loads(frame.data, provider=self._adapter.name, what="stream frame")
        if not isinstance(chunk, dict):
            return DecodeResult()
        if chunk.get("error") is not None:
            raise self._adapter.error_from_payload(chunk)

        if isinstance(chunk.get("model"), str) and chunk["model"]:
            agg.model = chunk["model"]
        if isinstance(chunk.get("id"), str) and chunk["id"]:
            agg.response_id = chunk["id"]
        agg.update_usage(parse_usage(chunk.get("usage")))

        result = DecodeResult()
        texts: list[str] = []
        choices = chunk.get("choices")
        for ch in choices if isinstance(choices, list) else ():
            if not isinstance(ch, dict):
                continue
            index = as_int(ch.get("index"))
            delta = ch.get("delta") or ch.get("message") or {}
            if isinstance(delta, dict):
                agg.set_role(index, delta.get("role"))
                content = delta.get("content")
                if isinstance(content, str) and content:
                    agg.append_text(index, content)
                    if content.strip():
                        texts.append(content)
                for tc in delta.get("tool_calls") or ():
                    if isinstance(tc, dict):
                        self._tool_fragment(agg, index, tc)
            finish = ch.get("finish_reason")
            if finish:
                result.choices.append(agg.finalize(index, normalize_finish_reason(finish)))
        result.delta = "".join(texts)
        return result

    def _tool_fragment(self, agg: StreamAggregator, index: int, tc: dict[str, Any]) -> None:
        fn = tc.get("function") or {}
        tool_id = tc.get("id") if isinstance(tc.get("id"), str) else None
        position = tc.get("index")
        if not isinstance(position, int):
            key = (index, tool_id or "")
            position = self._positions.get(key)
            if position is None:
                position = agg.next_tool_position(index)
                self._positions[key] = position
        arguments = fn.get("arguments")
        agg.append_tool_arguments(
            index,
            position,
            arguments if isinstance(arguments, str) else "",
            id=tool_id,
            name=fn.get("name") if isinstance(fn.get("name"), str) else None,
        )


class OpenAIAdapter(BaseAdapter):
    """Chat Completions (``/chat/completions``)."""

    provider = Provider.OPENAI
    default_base_url = "https://api.openai.com/v1"
    base_capabilities = Capabilities(
        tools=True, streaming=True, multimodal=True, parallel_tools=True
    )

    def endpoint(self, config: Config, *, stream: bool) -> str:
        return f"{self.base_url(config)}/chat/completions"

    # -- request -----------------------------------------------------------

    def to_wire_request(
        self, request: GenerateRequest, config: Config, *, stream: bool
    ) -> dict[str, Any]:
        opts = request.effective_options()
        payload: dict[str, Any] = {
            "model": config.model,
            "messages": [self._message(m) for m in request.messages],
        }
        self._apply_options(payload, opts, config)
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _apply_options(self, payload: dict[str, Any], opts: Options, config: Config) -> None:
        temperature = opts.temperature if opts.temperature is not None else config.default_temperature
        if temperature is not None:
            payload["temperature"] = temperature
        max_tokens = opts.max_tokens or config.default_max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if opts.top_p is not None:
            payload["top_p"] = opts.top_p
        if opts.stop:
            payload["stop"] = list(opts.stop)
        if opts.reasoning_effort:
            payload["reasoning_effort"] = opts.reasoning_effort
        if opts.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.json_schema(),
                    },
                }
                for t in opts.tools
            ]
            if opts.parallel_tool_calls is not None:
                payload["parallel_tool_calls"] = opts.parallel_tool_calls
        if opts.tool_choice is not None:
            forced = opts.forced_tool_name
            payload["tool_choice"] = (
                {"type": "function", "function": {"name": forced}}
                if forced
                else opts.tool_choice
            )

    def _message(self, message: Message) -> dict[str, Any]:
        if message.is_tool_result:
            return {
                "role": "tool",
                "tool_call_id": message.tool_call_id or "",
                "content": tool_output_text(message.text()),
            }
        out: dict[str, Any] = {"role": message.role}
        items = message.primary_items()
        if items and all(item.is_text for item in items):
            out["content"] = "".join(item.text or "" for item in items)
        elif items:
            out["content"] = [self._part(item) for item in items]
        else:
            out["content"] = "" if not message.tool_calls else None
        if message.tool_calls:
            out["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.raw_arguments or "{}"},
                }
                for tc in message.tool_calls
            ]
        if message.name:
            out["name"] = message.name
        return out

    def _part(self, item: ContentItem) -> dict[str, Any]:
        if item.is_text:
            return {"type": "text", "text": item.text or ""}
        if item.type == "image":
            url = item.url or item.data_uri()
            return {"type": "image_url", "image_url": {"url": url}}
        if item.type == "audio" and item.data:
            fmt = (item.mime_type or "audio/wav").split("/")[-1].replace("mpeg", "mp3")
            return {"type": "input_audio", "input_audio": {"data": item.data, "format": fmt}}
        if item.type in ("file", "pdf"):
            if item.file_id:
                return {"type": "file", "file": {"file_id": item.file_id}}
            if item.data:
                return {
                    "type": "file",
                    "file": {"filename": item.name or "file", "file_data": item.data_uri()},
                }
        raise UnsupportedContentError(
            f"{self.name} cannot send {item.type} content"
            + (" by URL" if item.url else ""),
            provider=self.name,
            hint="Send the content inline (from_bytes) or as text.",
        )

    # -- response ----------------------------------------------------------

    def from_wire_response(self, body: bytes) -> GenerateResponse:
        try:
            payload = loads(body, provider=self.name)
        except ProtocolError:
            replayed = self.replay_stream(body)
            if replayed is None:
                raise
            return replayed
        if isinstance(payload, dict):
            if isinstance(payload.get("choices"), list):
                return self._parse(payload)
            inner = payload.get("response")
            if isinstance(inner, dict) and isinstance(inner.get("choices"), list):
                return self._parse(inner)
            if payload.get("error") is not None:
                raise self.error_from_payload(payload)
        bare = self.bare_message(payload)
        if bare is not None:
            return bare
        raise unparseable(body, provider=self.name)

    def _parse(self, payload: dict[str, Any]) -> GenerateResponse:
        choices: list[Choice] = []
        for position, raw in enumerate(payload["choices"]):
            if not isinstance(raw, dict):
                continue
            msg = raw.get("message") or raw.get("delta") or {}
            calls = tuple(
                ToolCall.from_raw(
                    tc.get("id") or "",
                    (tc.get("function") or {}).get("name") or "",
                    (tc.get("function") or {}).get("arguments") or "",
                )
                for tc in msg.get("tool_calls") or ()
                if isinstance(tc, dict)
            )
            message = Message(
                role=normalize_role(msg.get("role")),
                content=_content_text(msg.get("content")),
                tool_calls=calls,
            )
            index = raw.get("index")
            choices.append(
                Choice(
                    index=index if isinstance(index, int) else position,
                    message=message,
                    finish_reason=normalize_finish_reason(raw.get("finish_reason")),
                )
            )
        return GenerateResponse(
            choices=tuple(choices),
            usage=parse_usage(payload.get("usage")),
            model=payload.get("model") or "",
            response_id=payload.get("id"),
        )

    def new_decoder(self) -> ChatDecoder:
        return ChatDecoder(self)
