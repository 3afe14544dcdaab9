"""OpenAI Responses API adapter.

System and developer turns become top-level ``instructions``; tool traffic
is expressed as ``function_call`` / ``function_call_output`` input items.
Supports server-side continuation through ``previous_response_id``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from genbridge.aggregator import DecodeResult, StreamAggregator
from genbridge.capabilities import Capabilities
from genbridge.errors import ProtocolError, UnsupportedContentError
from genbridge.models import Choice, GenerateResponse, Message, ToolCall, Usage
from genbridge.providers._utils import as_int, loads, tool_output_text, unparseable
from genbridge.providers.base import BaseAdapter, Provider
from genbridge.session import continuation_suffix

if TYPE_CHECKING:
    from genbridge.config import Config
    from genbridge.frames import Frame
    from genbridge.models import ContentItem, GenerateRequest
    from genbridge.session import SessionState

logger = logging.getLogger(__name__)


def parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    input_details = raw.get("input_tokens_details")
    output_details = raw.get("output_tokens_details")
    return Usage(
        prompt_tokens=as_int(raw.get("input_tokens")),
        completion_tokens=as_int(raw.get("output_tokens")),
        total_tokens=as_int(raw.get("total_tokens")),
        cached_tokens=as_int(input_details.get("cached_tokens"))
        if isinstance(input_details, dict)
        else 0,
        reasoning_tokens=as_int(output_details.get("reasoning_tokens"))
        if isinstance(output_details, dict)
        else 0,
    )


def _finish_reason(response: dict[str, Any], *, has_tools: bool) -> str:
    if has_tools:
        return "tool_calls"
    if response.get("status") == "incomplete":
        details = response.get("incomplete_details") or {}
        reason = details.get("reason") if isinstance(details, dict) else None
        return "length" if reason == "max_output_tokens" else (reason or "length")
    return "stop"


class ResponsesDecoder:
    """Classify Responses API stream events into choice 0."""

    def __init__(self, adapter: ResponsesAdapter) -> None:
        self._adapter = adapter
        self._streamed_args: set[int] = set()

    def decode(self, frame: Frame, agg: StreamAggregator) -> DecodeResult:
        event = loads(frame.data, provider=self._adapter.name, what="stream frame")
        if not isinstance(event, dict):
            return DecodeResult()
        kind = event.get("type") or frame.event or ""

        if kind == "error" or (not kind and event.get("error") is not None):
            raise self._adapter.error_from_payload(event)
        if kind == "response.failed":
            raise self._adapter.error_from_payload(event.get("response") or event)

        if kind in ("response.created", "response.in_progress"):
            self._remember(event.get("response"), agg)
            return DecodeResult()
        if kind == "response.output_text.delta":
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                agg.set_role(0, "assistant")
                agg.append_text(0, delta)
                return DecodeResult(delta=delta if delta.strip() else "")
            return DecodeResult()
        if kind == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                agg.open_tool(
                    0,
                    as_int(event.get("output_index")),
                    id=item.get("call_id") or item.get("id"),
                    name=item.get("name"),
                )
            return DecodeResult()
        if kind == "response.function_call_arguments.delta":
            position = as_int(event.get("output_index"))
            delta = event.get("delta")
            if isinstance(delta, str):
                self._streamed_args.add(position)
                agg.append_tool_arguments(0, position, delta)
            return DecodeResult()
        if kind == "response.output_item.done":
            item = event.get("item") or {}
            position = as_int(event.get("output_index"))
            if item.get("type") == "function_call" and position not in self._streamed_args:
                # Arguments were never streamed; take them whole.
                agg.append_tool_arguments(
                    0,
                    position,
                    item.get("arguments") or "",
                    id=item.get("call_id") or item.get("id"),
                    name=item.get("name"),
                )
                self._streamed_args.add(position)
            return DecodeResult()
        if kind in ("response.completed", "response.incomplete"):
            response = event.get("response") or {}
            self._remember(response, agg)
            agg.update_usage(parse_usage(response.get("usage")))
            if not agg.is_open(0):
                parsed = self._adapter.parse_response(response)
                return DecodeResult(choices=list(parsed.choices), done=True)
            finish = _finish_reason(response, has_tools=agg.has_tool_calls(0))
            return DecodeResult(choices=[agg.finalize(0, finish)], done=True)
        return DecodeResult()

    @staticmethod
    def _remember(response: Any, agg: StreamAggregator) -> None:
        if not isinstance(response, dict):
            return
        if isinstance(response.get("id"), str) and response["id"]:
            agg.response_id = response["id"]
        if isinstance(response.get("model"), str) and response["model"]:
            agg.model = response["model"]


class ResponsesAdapter(BaseAdapter):
    """Responses API (``/responses``)."""

    provider = Provider.OPENAI_RESPONSES
    default_base_url = "https://api.openai.com/v1"
    base_capabilities = Capabilities(
        tools=True,
        streaming=True,
        multimodal=True,
        parallel_tools=True,
        session_continuation=True,
        instructions=True,
    )

    def endpoint(self, config: Config, *, stream: bool) -> str:
        return f"{self.base_url(config)}/responses"

    def to_wire_request(
        self, request: GenerateRequest, config: Config, *, stream: bool
    ) -> dict[str, Any]:
        opts = request.effective_options()
        instructions: list[str] = []
        items: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role in ("system", "developer"):
                text = message.text()
                if text:
                    instructions.append(text)
                continue
            items.extend(self._input_items(message))

        payload: dict[str, Any] = {"model": config.model, "input": items}
        if instructions:
            payload["instructions"] = "\n\n".join(instructions)
        temperature = opts.temperature if opts.temperature is not None else config.default_temperature
        if temperature is not None:
            payload["temperature"] = temperature
        max_tokens = opts.max_tokens or config.default_max_tokens
        if max_tokens:
            payload["max_output_tokens"] = max_tokens
        if opts.top_p is not None:
            payload["top_p"] = opts.top_p
        if opts.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.json_schema(),
                }
                for t in opts.tools
            ]
            if opts.parallel_tool_calls is not None:
                payload["parallel_tool_calls"] = opts.parallel_tool_calls
        if opts.tool_choice is not None:
            forced = opts.forced_tool_name
            payload["tool_choice"] = (
                {"type": "function", "name": forced} if forced else opts.tool_choice
            )
        if opts.reasoning_effort:
            payload["reasoning"] = {"effort": opts.reasoning_effort}
        if opts.previous_response_id:
            payload["previous_response_id"] = opts.previous_response_id
        if opts.store is not None:
            payload["store"] = opts.store
        if stream:
            payload["stream"] = True
        return payload

    def _input_items(self, message: Message) -> list[dict[str, Any]]:
        if message.is_tool_result:
            return [
                {
                    "type": "function_call_output",
                    "call_id": message.tool_call_id or "",
                    "output": tool_output_text(message.text()),
                }
            ]
        out: list[dict[str, Any]] = []
        assistant = message.role == "assistant"
        parts = [self._part(item, assistant=assistant) for item in message.primary_items()]
        parts = [p for p in parts if p.get("type") != "output_text" or p.get("text")]
        if parts:
            out.append({"role": message.role, "content": parts})
        for tc in message.tool_calls:
            out.append(
                {
                    "type": "function_call",
                    "call_id": tc.id,
                    "name": tc.name,
                    "arguments": tc.raw_arguments or "{}",
                }
            )
        return out

    def _part(self, item: ContentItem, *, assistant: bool) -> dict[str, Any]:
        if item.is_text:
            return {"type": "output_text" if assistant else "input_text", "text": item.text or ""}
        if item.type == "image":
            return {"type": "input_image", "image_url": item.url or item.data_uri()}
        if item.type in ("file", "pdf"):
            if item.file_id:
                return {"type": "input_file", "file_id": item.file_id}
            if item.url:
                return {"type": "input_file", "file_url": item.url}
            if item.data:
                return {
                    "type": "input_file",
                    "filename": item.name or "file",
                    "file_data": item.data_uri(),
                }
        raise UnsupportedContentError(
            f"{self.name} cannot send {item.type} content",
            provider=self.name,
            hint="Send images or files, or convert the content to text.",
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
            if isinstance(payload.get("output"), list):
                return self.parse_response(payload)
            inner = payload.get("response")
            if isinstance(inner, dict) and isinstance(inner.get("output"), list):
                return self.parse_response(inner)
            if payload.get("error") is not None:
                raise self.error_from_payload(payload)
        bare = self.bare_message(payload)
        if bare is not None:
            return bare
        raise unparseable(body, provider=self.name)

    def parse_response(self, response: dict[str, Any]) -> GenerateResponse:
        """Fold ``output`` items into a single assistant choice."""
        texts: list[str] = []
        calls: list[ToolCall] = []
        for item in response.get("output") or ():
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind == "message":
                for part in item.get("content") or ():
                    if isinstance(part, dict) and isinstance(part.get("text"), str):
                        texts.append(part["text"])
            elif kind == "function_call":
                calls.append(
                    ToolCall.from_raw(
                        item.get("call_id") or item.get("id") or "",
                        item.get("name") or "",
                        item.get("arguments") or "",
                    )
                )
        if not texts and isinstance(response.get("output_text"), str):
            texts.append(response["output_text"])
        choices: tuple[Choice, ...] = ()
        if texts or calls:
            message = Message(role="assistant", content="".join(texts), tool_calls=tuple(calls))
            choices = (
                Choice(
                    index=0,
                    message=message,
                    finish_reason=_finish_reason(response, has_tools=bool(calls)),
                ),
            )
        return GenerateResponse(
            choices=choices,
            usage=parse_usage(response.get("usage")),
            model=response.get("model") or "",
            response_id=response.get("id"),
        )

    def new_decoder(self) -> ResponsesDecoder:
        return ResponsesDecoder(self)

    # -- session continuation ----------------------------------------------

    def continue_session(
        self, wire: dict[str, Any], state: SessionState | None
    ) -> dict[str, Any] | None:
        if wire.get("previous_response_id"):
            return None
        found = continuation_suffix(state, wire.get("input") or [])
        if found is None:
            return None
        response_id, suffix = found
        logger.debug("Continuing %s with %d new input items", response_id, len(suffix))
        return {**wire, "previous_response_id": response_id, "input": suffix}

    def session_input(self, wire: dict[str, Any]) -> list[Any] | None:
        items = wire.get("input")
        return list(items) if isinstance(items, list) else None
