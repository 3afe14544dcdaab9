"""Ollama ``/api/chat`` adapter (newline-delimited JSON streaming)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from genbridge.aggregator import DecodeResult, StreamAggregator
from genbridge.capabilities import Capabilities
from genbridge.errors import ProtocolError, UnsupportedContentError
from genbridge.models import Choice, GenerateResponse, Usage
from genbridge.providers._utils import as_int, loads, unparseable
from genbridge.providers.base import BaseAdapter, Provider

if TYPE_CHECKING:
    from genbridge.config import Config
    from genbridge.frames import Frame
    from genbridge.models import GenerateRequest, Message


def parse_usage(chunk: dict[str, Any]) -> Usage | None:
    if "prompt_eval_count" not in chunk and "eval_count" not in chunk:
        return None
    return Usage(
        prompt_tokens=as_int(chunk.get("prompt_eval_count")),
        completion_tokens=as_int(chunk.get("eval_count")),
    )


class OllamaDecoder:
    def __init__(self, adapter: OllamaAdapter) -> None:
        self._adapter = adapter

    def decode(self, frame: Frame, agg: StreamAggregator) -> DecodeResult:
        chunk = loads(frame.data, provider=self._adapter.name, what="stream frame")
        return self.apply(chunk, agg)

    def apply(self, chunk: Any, agg: StreamAggregator) -> DecodeResult:
        if not isinstance(chunk, dict):
            return DecodeResult()
        if chunk.get("error") is not None:
            raise self._adapter.error_from_payload(chunk)
        if isinstance(chunk.get("model"), str):
            agg.model = chunk["model"]

        delta = ""
        message = chunk.get("message")
        if isinstance(message, dict):
            agg.set_role(0, message.get("role"))
            content = message.get("content")
            if isinstance(content, str) and content:
                agg.append_text(0, content)
                delta = content if content.strip() else ""
            for call in message.get("tool_calls") or ():
                fn = call.get("function") if isinstance(call, dict) else None
                if not isinstance(fn, dict):
                    continue
                slot = agg.next_tool_position(0)
                args = fn.get("arguments")
                agg.add_tool_call(
                    0,
                    id=call.get("id") or f"call_{slot}",
                    name=fn.get("name") or "",
                    arguments=args if isinstance(args, dict) else {},
                    position=slot,
                )

        if not chunk.get("done"):
            return DecodeResult(delta=delta)
        agg.update_usage(parse_usage(chunk))
        reason = chunk.get("done_reason") or "stop"
        if reason == "stop" and agg.has_tool_calls(0):
            reason = "tool_calls"
        return DecodeResult(choices=[agg.finalize(0, reason)], delta=delta, done=True)


class OllamaAdapter(BaseAdapter):
    """Local or self-hosted Ollama server."""

    provider = Provider.OLLAMA
    framing = "ndjson"
    default_base_url = "http://localhost:11434"
    base_capabilities = Capabilities(tools=True, streaming=True, multimodal=True)

    def endpoint(self, config: Config, *, stream: bool) -> str:
        return f"{self.base_url(config)}/api/chat"

    def to_wire_request(
        self, request: GenerateRequest, config: Config, *, stream: bool
    ) -> dict[str, Any]:
        opts = request.effective_options()
        payload: dict[str, Any] = {
            "model": config.model,
            "messages": [self._message(m) for m in request.messages],
            "stream": stream,
        }
        options: dict[str, Any] = {}
        temperature = opts.temperature if opts.temperature is not None else config.default_temperature
        if temperature is not None:
            options["temperature"] = temperature
        max_tokens = opts.max_tokens or config.default_max_tokens
        if max_tokens:
            options["num_predict"] = max_tokens
        if opts.top_p is not None:
            options["top_p"] = opts.top_p
        if opts.stop:
            options["stop"] = list(opts.stop)
        if options:
            payload["options"] = options
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
        return payload

    def _message(self, message: Message) -> dict[str, Any]:
        if message.is_tool_result:
            out: dict[str, Any] = {"role": "tool", "content": message.text()}
            if message.name:
                out["tool_name"] = message.name
            return out
        role = "system" if message.role == "developer" else message.role
        texts: list[str] = []
        images: list[str] = []
        for item in message.primary_items():
            if item.is_text:
                texts.append(item.text or "")
            elif item.type == "image" and item.data:
                images.append(item.data)
            else:
                raise UnsupportedContentError(
                    f"{self.name} accepts text and inline images only, got {item.type}"
                    + (" URL" if item.url else ""),
                    provider=self.name,
                    hint="Pass images with ContentItem.from_bytes.",
                )
        out = {"role": role, "content": "".join(texts)}
        if images:
            out["images"] = images
        if message.tool_calls:
            out["tool_calls"] = [
                {"function": {"name": tc.name, "arguments": tc.arguments}}
                for tc in message.tool_calls
            ]
        return out

    def from_wire_response(self, body: bytes) -> GenerateResponse:
        try:
            payload = loads(body, provider=self.name)
        except ProtocolError:
            # A streamed body: one JSON object per line.
            replayed = self.replay_stream(body)
            if replayed is None:
                raise
            return replayed
        if not isinstance(payload, dict):
            raise unparseable(body, provider=self.name)
        if payload.get("error") is not None:
            raise self.error_from_payload(payload)
        if not isinstance(payload.get("message"), dict):
            bare = self.bare_message(payload)
            if bare is None:
                raise unparseable(body, provider=self.name)
            return bare
        agg = StreamAggregator()
        result = self.new_decoder().apply({**payload, "done": True}, agg)
        choices: list[Choice] = result.choices
        return agg.response(choices)

    def new_decoder(self) -> OllamaDecoder:
        return OllamaDecoder(self)
