"""Gemini ``generateContent`` adapter (Generative Language API)."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from genbridge.aggregator import DecodeResult, StreamAggregator
from genbridge.capabilities import Capabilities
from genbridge.errors import UnsupportedContentError
from genbridge.models import Choice, GenerateResponse, Usage
from genbridge.providers._utils import as_int, loads, sanitize_schema, unparseable
from genbridge.providers.base import BaseAdapter, Provider

if TYPE_CHECKING:
    from genbridge.config import Config
    from genbridge.frames import Frame
    from genbridge.models import ContentItem, GenerateRequest, Message

logger = logging.getLogger(__name__)

# Gemini rejects conversations that do not open with a user turn.
_PLACEHOLDER_TURN = {"role": "user", "parts": [{"text": " "}]}

_MODES = {"auto": "AUTO", "required": "ANY", "none": "NONE"}


def parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage(
        prompt_tokens=as_int(raw.get("promptTokenCount")),
        completion_tokens=as_int(raw.get("candidatesTokenCount")),
        total_tokens=as_int(raw.get("totalTokenCount")),
        cached_tokens=as_int(raw.get("cachedContentTokenCount")),
        reasoning_tokens=as_int(raw.get("thoughtsTokenCount")),
    )


def _finish_reason(reason: str, *, has_tools: bool) -> str:
    if reason == "STOP":
        return "tool_calls" if has_tools else "stop"
    if reason == "MAX_TOKENS":
        return "length"
    return reason


def _response_object(text: str) -> dict[str, Any]:
    """functionResponse.response must be an object."""
    try:
        value = json.loads(text)
    except ValueError:
        return {"content": text}
    return value if isinstance(value, dict) else {"content": value}


class GeminiDecoder:
    """Apply Gemini response chunks; function calls arrive whole."""

    def __init__(self, adapter: GeminiAdapter) -> None:
        self._adapter = adapter

    def decode(self, frame: Frame, agg: StreamAggregator) -> DecodeResult:
        chunk = loads(frame.data, provider=self._adapter.name, what="stream frame")
        if isinstance(chunk, list):
            result = DecodeResult()
            for item in chunk:
                part = self.apply(item, agg)
                result.choices.extend(part.choices)
                result.delta += part.delta
            return result
        return self.apply(chunk, agg)

    def apply(self, chunk: Any, agg: StreamAggregator) -> DecodeResult:
        if not isinstance(chunk, dict):
            return DecodeResult()
        if chunk.get("error") is not None:
            raise self._adapter.error_from_payload(chunk)
        if isinstance(chunk.get("modelVersion"), str):
            agg.model = chunk["modelVersion"]
        if isinstance(chunk.get("responseId"), str):
            agg.response_id = chunk["responseId"]
        agg.update_usage(parse_usage(chunk.get("usageMetadata")))

        result = DecodeResult()
        texts: list[str] = []
        candidates = chunk.get("candidates")
        if not candidates:
            feedback = chunk.get("promptFeedback") or {}
            block = feedback.get("blockReason") if isinstance(feedback, dict) else None
            if block:
                result.choices.append(agg.finalize(0, str(block)))
            return result
        for position, cand in enumerate(candidates):
            if not isinstance(cand, dict):
                continue
            index = cand.get("index")
            index = index if isinstance(index, int) else position
            content = cand.get("content") or {}
            agg.set_role(index, content.get("role") or "assistant")
            for part in content.get("parts") or ():
                if not isinstance(part, dict) or part.get("thought"):
                    continue
                text = part.get("text")
                if isinstance(text, str) and text:
                    agg.append_text(index, text)
                    if text.strip():
                        texts.append(text)
                call = part.get("functionCall")
                if isinstance(call, dict):
                    slot = agg.next_tool_position(index)
                    args = call.get("args")
                    agg.add_tool_call(
                        index,
                        id=call.get("id") or f"call_{index}_{slot}",
                        name=call.get("name") or "",
                        arguments=args if isinstance(args, dict) else {},
                        position=slot,
                    )
            reason = cand.get("finishReason")
            if reason:
                finish = _finish_reason(str(reason), has_tools=agg.has_tool_calls(index))
                result.choices.append(agg.finalize(index, finish))
        result.delta = "".join(texts)
        return result


class GeminiAdapter(BaseAdapter):
    """``models/{model}:generateContent`` and ``:streamGenerateContent``."""

    provider = Provider.GEMINI
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    base_capabilities = Capabilities(
        tools=True, streaming=True, multimodal=True, parallel_tools=True, instructions=True
    )

    def endpoint(self, config: Config, *, stream: bool) -> str:
        model = config.model
        if not model.startswith(("models/", "tunedModels/")):
            model = f"models/{model}"
        base = f"{self.base_url(config)}/{quote(model, safe='/')}"
        if stream:
            return f"{base}:streamGenerateContent?alt=sse"
        return f"{base}:generateContent"

    def auth_headers(self, config: Config) -> dict[str, str]:
        return {"x-goog-api-key": config.api_key} if config.api_key else {}

    def to_wire_request(
        self, request: GenerateRequest, config: Config, *, stream: bool
    ) -> dict[str, Any]:
        opts = request.effective_options()
        system: list[dict[str, Any]] = []
        contents: list[dict[str, Any]] = []
        # tool_call_id -> function name, for results that omit the name
        call_names: dict[str, str] = {}
        for message in request.messages:
            if message.role in ("system", "developer"):
                text = message.text()
                if text:
                    system.append({"text": text})
                continue
            for tc in message.tool_calls:
                call_names[tc.id] = tc.name
            turn = self._content(message, call_names)
            if not turn["parts"]:
                continue
            if contents and contents[-1]["role"] == turn["role"]:
                contents[-1]["parts"].extend(turn["parts"])
            else:
                contents.append(turn)
        if not contents or contents[0]["role"] != "user":
            contents.insert(0, dict(_PLACEHOLDER_TURN, parts=[{"text": " "}]))

        payload: dict[str, Any] = {"contents": contents}
        if system:
            payload["systemInstruction"] = {"parts": system}

        generation: dict[str, Any] = {}
        temperature = opts.temperature if opts.temperature is not None else config.default_temperature
        if temperature is not None:
            generation["temperature"] = temperature
        max_tokens = opts.max_tokens or config.default_max_tokens
        if max_tokens:
            generation["maxOutputTokens"] = max_tokens
        if opts.top_p is not None:
            generation["topP"] = opts.top_p
        if opts.stop:
            generation["stopSequences"] = list(opts.stop)
        if generation:
            payload["generationConfig"] = generation

        if opts.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": t.name,
                            "description": t.description,
                            "parameters": sanitize_schema(t.json_schema()),
                        }
                        for t in opts.tools
                    ]
                }
            ]
        if opts.tool_choice is not None:
            forced = opts.forced_tool_name
            config_block: dict[str, Any] = {
                "mode": "ANY" if forced else _MODES[str(opts.tool_choice)]
            }
            if forced:
                config_block["allowedFunctionNames"] = [forced]
            payload["toolConfig"] = {"functionCallingConfig": config_block}
        return payload

    def _content(self, message: Message, call_names: dict[str, str]) -> dict[str, Any]:
        if message.is_tool_result:
            name = message.name or call_names.get(message.tool_call_id or "", "")
            return {
                "role": "user",
                "parts": [
                    {
                        "functionResponse": {
                            "name": name,
                            "response": _response_object(message.text()),
                        }
                    }
                ],
            }
        parts = [self._part(item) for item in message.primary_items()]
        parts = [p for p in parts if "text" not in p or p["text"]]
        for tc in message.tool_calls:
            parts.append({"functionCall": {"name": tc.name, "args": tc.arguments}})
        role = "model" if message.role == "assistant" else "user"
        return {"role": role, "parts": parts}

    def _part(self, item: ContentItem) -> dict[str, Any]:
        if item.is_text:
            return {"text": item.text or ""}
        if item.url:
            raise UnsupportedContentError(
                f"{self.name} does not accept {item.type} URLs inline",
                provider=self.name,
                hint="Pass the bytes with ContentItem.from_bytes, or an uploaded file_id.",
            )
        if item.file_id:
            return {
                "fileData": {
                    "mimeType": item.mime_type or "application/octet-stream",
                    "fileUri": item.file_id,
                }
            }
        if item.data:
            return {
                "inlineData": {
                    "mimeType": item.mime_type or "application/octet-stream",
                    "data": item.data,
                }
            }
        raise UnsupportedContentError(
            f"{self.name} content item of type {item.type} has no payload",
            provider=self.name,
        )

    def from_wire_response(self, body: bytes) -> GenerateResponse:
        text = body.decode("utf-8", "replace").lstrip()
        if text.startswith(("data:", "event:")):
            replayed = self.replay_stream(body)
            if replayed is not None:
                return replayed
            raise unparseable(body, provider=self.name)
        payload = loads(body, provider=self.name)
        if isinstance(payload, dict) and isinstance(payload.get("response"), dict):
            payload = payload["response"]
        chunks = payload if isinstance(payload, list) else [payload]
        for chunk in chunks:
            if isinstance(chunk, dict) and chunk.get("error") is not None:
                raise self.error_from_payload(chunk)
        if not chunks or not all(
            isinstance(c, dict) and ("candidates" in c or "promptFeedback" in c)
            for c in chunks
        ):
            bare = self.bare_message(payload)
            if bare is None:
                raise unparseable(body, provider=self.name)
            return bare

        decoder = self.new_decoder()
        agg = StreamAggregator()
        choices: dict[int, Choice] = {}
        for chunk in chunks:
            for choice in decoder.apply(chunk, agg).choices:
                choices[choice.index] = choice
        for choice in agg.finalize_all(""):
            choices.setdefault(choice.index, choice)
        return agg.response([choices[i] for i in sorted(choices)])

    def new_decoder(self) -> GeminiDecoder:
        return GeminiDecoder(self)
