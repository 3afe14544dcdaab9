"""Provider characterization tests.

These tests pin the exact wire shapes each adapter sends and the response
shapes each adapter accepts. Provider wire formats are consumed externally
and drift is hard to detect, so the shapes are spelled out literally.
"""

from __future__ import annotations

import json
from typing import Any

import pytest

from genbridge._http import SNIPPET_LIMIT
from genbridge.errors import (
    ProtocolError,
    ProviderError,
    RateLimitError,
    UnsupportedContentError,
)
from genbridge.models import (
    ContentItem,
    GenerateRequest,
    Message,
    ToolCall,
    ToolDefinition,
    Usage,
)
from genbridge.options import Options
from genbridge.providers import Provider, adapter_for
from genbridge.providers._utils import sanitize_schema
from tests.conftest import ANTHROPIC_MODEL, GEMINI_MODEL, OLLAMA_MODEL

pytestmark = pytest.mark.contract

TERSE = GenerateRequest(messages=(Message.system("Be terse"), Message.user("2+2?")))
WEATHER = ToolDefinition(
    name="get_weather",
    description="Look up the weather",
    parameters={"city": {"type": "string"}},
    required=("city",),
)
CALL = ToolCall.from_arguments("call_1", "get_weather", {"city": "Paris"})


def _sse(*events: Any) -> bytes:
    lines = []
    for event in events:
        if isinstance(event, tuple):
            lines.append(f"event: {event[0]}")
            event = event[1]
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    return "\n".join(lines).encode("utf-8")


# =============================================================================
# Shared contract
# =============================================================================


@pytest.mark.parametrize("provider", [p.value for p in Provider])
def test_bare_content_reply_is_accepted_by_every_adapter(provider: str) -> None:
    """A bare {"content": ...} body should parse to one assistant choice for every provider."""
    response = adapter_for(provider).from_wire_response(b'{"content":"4"}')
    assert response.choices[0].message.content == "4"
    assert response.choices[0].message.role == "assistant"


@pytest.mark.parametrize("provider", [p.value for p in Provider])
def test_garbage_body_raises_protocol_error_with_bounded_snippet(provider: str) -> None:
    """Non-JSON bodies should raise ProtocolError carrying the provider and a short snippet."""
    body = b"<html>" + b"x" * 1000 + b"</html>"
    with pytest.raises(ProtocolError) as exc:
        adapter_for(provider).from_wire_response(body)
    assert exc.value.provider == provider
    assert exc.value.snippet is not None
    assert exc.value.snippet.startswith("<html>")
    assert len(exc.value.snippet.encode("utf-8")) <= SNIPPET_LIMIT


@pytest.mark.parametrize("provider", [p.value for p in Provider])
def test_unknown_json_shape_raises_protocol_error(provider: str) -> None:
    """Valid JSON in no known shape should not be mistaken for an empty reply."""
    with pytest.raises(ProtocolError, match="did not match any known shape"):
        adapter_for(provider).from_wire_response(b'{"unexpected": true}')


@pytest.mark.parametrize(
    ("provider", "url"),
    [
        ("openai", "https://api.openai.com/v1/chat/completions"),
        ("openai-responses", "https://api.openai.com/v1/responses"),
        ("anthropic", "https://api.anthropic.com/v1/messages"),
        ("grok", "https://api.x.ai/v1/chat/completions"),
        ("ollama", "http://localhost:11434/api/chat"),
    ],
)
def test_default_endpoints(make_config, provider: str, url: str) -> None:
    """Characterize the default request URL per provider and mode."""
    adapter = adapter_for(provider)
    assert adapter.endpoint(make_config(provider, "m"), stream=False) == url


def test_base_url_override_drops_trailing_slash(make_config) -> None:
    cfg = make_config("openai", "m", base_url="http://proxy.local/v1/")
    assert adapter_for("openai").endpoint(cfg, stream=True) == "http://proxy.local/v1/chat/completions"


def test_headers_carry_auth_and_extra_headers(make_config) -> None:
    """Auth and Config.extra_headers should both reach the wire."""
    cfg = make_config("openai", "m", extra_headers={"X-Trace": "abc"})
    headers = adapter_for("openai").headers(cfg, stream=True)
    assert headers["Authorization"] == "Bearer test-key"
    assert headers["Accept"] == "text/event-stream"
    assert headers["X-Trace"] == "abc"


def test_sanitize_schema_keeps_property_names() -> None:
    """Schema keywords are stripped, but a property that happens to share their name is kept."""
    schema = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "additionalProperties": False,
        "x-internal": True,
        "properties": {
            "additionalProperties": {"type": "string", "x-note": "n"},
            "nested": {"type": "object", "additionalProperties": False},
        },
    }
    assert sanitize_schema(schema) == {
        "type": "object",
        "properties": {
            "additionalProperties": {"type": "string"},
            "nested": {"type": "object"},
        },
    }
    assert schema["additionalProperties"] is False


# =============================================================================
# OpenAI Chat Completions
# =============================================================================


def test_openai_request_shape(make_config) -> None:
    """Characterize the minimal chat completions payload."""
    payload = adapter_for("openai").to_wire_request(TERSE, make_config(), stream=False)
    assert payload == {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "system", "content": "Be terse"},
            {"role": "user", "content": "2+2?"},
        ],
    }


def test_openai_tools_and_forced_choice(make_config) -> None:
    """A forced tool should map to tool_choice with a function name."""
    request = GenerateRequest(
        messages=(Message.user("weather?"),),
        options=Options(
            tools=(WEATHER,),
            tool_choice={"name": "get_weather"},
            parallel_tool_calls=False,
            temperature=0.2,
            max_tokens=64,
            stop=("END",),
        ),
    )
    payload = adapter_for("openai").to_wire_request(request, make_config(), stream=True)
    assert payload["tools"] == [
        {
            "type": "function",
            "function": {
                "name": "get_weather",
                "description": "Look up the weather",
                "parameters": {
                    "type": "object",
                    "properties": {"city": {"type": "string"}},
                    "required": ["city"],
                },
            },
        }
    ]
    assert payload["tool_choice"] == {"type": "function", "function": {"name": "get_weather"}}
    assert payload["parallel_tool_calls"] is False
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 64
    assert payload["stop"] == ["END"]
    assert payload["stream"] is True


def test_openai_tool_round_trip_messages(make_config) -> None:
    """Assistant tool calls and tool results should keep their ids across the round trip."""
    request = GenerateRequest(
        messages=(
            Message.user("weather?"),
            Message.assistant(tool_calls=[CALL]),
            Message.tool_result("call_1", ""),
        )
    )
    messages = adapter_for("openai").to_wire_request(request, make_config(), stream=False)[
        "messages"
    ]
    assert messages[1] == {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {
                "id": "call_1",
                "type": "function",
                "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'},
            }
        ],
    }
    assert messages[2] == {"role": "tool", "tool_call_id": "call_1", "content": "{}"}


def test_openai_multimodal_parts(make_config) -> None:
    """Images should become image_url parts, as a URL or a data: URI."""
    request = GenerateRequest(
        messages=(
            Message.user(
                "",
                ContentItem.from_text("What is this?"),
                ContentItem.from_bytes(b"\x89PNG", "image/png"),
                ContentItem.from_url("https://example.com/cat.jpg", "image/jpeg"),
            ),
        )
    )
    content = adapter_for("openai").to_wire_request(request, make_config(), stream=False)[
        "messages"
    ][0]["content"]
    assert content == [
        {"type": "text", "text": "What is this?"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,iVBORw=="}},
        {"type": "image_url", "image_url": {"url": "https://example.com/cat.jpg"}},
    ]


def test_openai_rejects_video(make_config) -> None:
    """Video has no chat completions encoding and should fail before sending."""
    request = GenerateRequest(
        messages=(Message.user("", ContentItem.from_bytes(b"0", "video/mp4")),)
    )
    with pytest.raises(UnsupportedContentError, match="video"):
        adapter_for("openai").to_wire_request(request, make_config(), stream=False)


def test_openai_response_parsing() -> None:
    """Characterize text, finish reason and usage extraction."""
    body = {
        "id": "chatcmpl-1",
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "get_weather", "arguments": '{"city":"Paris"}'},
                        }
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {
            "prompt_tokens": 10,
            "completion_tokens": 5,
            "total_tokens": 15,
            "prompt_tokens_details": {"cached_tokens": 4},
        },
    }
    response = adapter_for("openai").from_wire_response(json.dumps(body).encode())
    assert response.response_id == "chatcmpl-1"
    assert response.tool_calls()[0].arguments == {"city": "Paris"}
    assert response.finish_reason == "tool_calls"
    assert response.usage == Usage(
        prompt_tokens=10, completion_tokens=5, total_tokens=15, cached_tokens=4
    )


def test_openai_accepts_wrapped_and_streamed_bodies() -> None:
    """A {"response": ...} envelope and an SSE body should both parse as fallbacks."""
    adapter = adapter_for("openai")
    wrapped = {"response": {"choices": [{"message": {"content": "hi"}, "finish_reason": "stop"}]}}
    assert adapter.from_wire_response(json.dumps(wrapped).encode()).text() == "hi"

    streamed = _sse(
        {"choices": [{"index": 0, "delta": {"content": "Hel"}}]},
        {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]},
    ) + b"\ndata: [DONE]\n\n"
    response = adapter.from_wire_response(streamed)
    assert response.text() == "Hello"
    assert response.finish_reason == "stop"


def test_openai_error_envelope_in_success_body_raises() -> None:
    """An error envelope in a 200 body should surface as ProviderError."""
    body = b'{"error": {"message": "context too long", "type": "invalid_request_error"}}'
    with pytest.raises(ProviderError, match="context too long") as exc:
        adapter_for("openai").from_wire_response(body)
    assert exc.value.error_type == "invalid_request_error"


def test_openai_parse_error_maps_status() -> None:
    err = adapter_for("openai").parse_error(
        503, b'{"error": {"message": "overloaded"}}', {"retry-after": "1"}
    )
    assert err.status_code == 503
    assert err.retryable is True
    assert err.retry_after_s == 1.0


# =============================================================================
# OpenAI Responses
# =============================================================================


def test_responses_request_shape(make_config) -> None:
    """Characterize Responses API input items, flattened tools and max_output_tokens."""
    cfg = make_config("openai-responses", "gpt-4.1")
    request = GenerateRequest(
        messages=(
            Message.system("Be terse"),
            Message.user("weather?"),
            Message.assistant("checking", [CALL]),
            Message.tool_result("call_1", '{"temp": 20}'),
        ),
        options=Options(
            tools=(WEATHER,),
            tool_choice="required",
            max_tokens=32,
            reasoning_effort="low",
            store=True,
        ),
    )
    payload = adapter_for("openai-responses").to_wire_request(request, cfg, stream=True)
    assert payload["instructions"] == "Be terse"
    assert payload["input"] == [
        {"role": "user", "content": [{"type": "input_text", "text": "weather?"}]},
        {"role": "assistant", "content": [{"type": "output_text", "text": "checking"}]},
        {
            "type": "function_call",
            "call_id": "call_1",
            "name": "get_weather",
            "arguments": '{"city": "Paris"}',
        },
        {"type": "function_call_output", "call_id": "call_1", "output": '{"temp": 20}'},
    ]
    assert payload["tools"][0]["name"] == "get_weather"
    assert payload["tool_choice"] == "required"
    assert payload["max_output_tokens"] == 32
    assert payload["reasoning"] == {"effort": "low"}
    assert payload["store"] is True
    assert payload["stream"] is True


def test_responses_parses_output_items() -> None:
    """Reasoning items are skipped; message text and usage are kept."""
    body = {
        "id": "resp_1",
        "model": "gpt-4.1",
        "status": "completed",
        "output": [
            {"type": "reasoning", "summary": []},
            {"type": "message", "content": [{"type": "output_text", "text": "Hi"}]},
        ],
        "usage": {"input_tokens": 5, "output_tokens": 2, "output_tokens_details": {"reasoning_tokens": 1}},
    }
    response = adapter_for("openai-responses").from_wire_response(json.dumps(body).encode())
    assert response.text() == "Hi"
    assert response.finish_reason == "stop"
    assert response.response_id == "resp_1"
    assert response.usage == Usage(prompt_tokens=5, completion_tokens=2, reasoning_tokens=1)


def test_responses_incomplete_maps_to_length() -> None:
    """An incomplete response should finish with "length"."""
    body = {
        "id": "resp_2",
        "status": "incomplete",
        "incomplete_details": {"reason": "max_output_tokens"},
        "output": [{"type": "message", "content": [{"type": "output_text", "text": "Hal"}]}],
    }
    response = adapter_for("openai-responses").from_wire_response(json.dumps(body).encode())
    assert response.finish_reason == "length"


def test_responses_stream_replay() -> None:
    """Streamed arguments should not be duplicated by the closing output_item.done."""
    body = _sse(
        {"type": "response.created", "response": {"id": "resp_1", "model": "gpt-4.1"}},
        {"type": "response.output_text.delta", "delta": "Hi"},
        {
            "type": "response.output_item.added",
            "output_index": 1,
            "item": {"type": "function_call", "call_id": "call_1", "name": "f"},
        },
        {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '{"a":'},
        {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": "1}"},
        {
            "type": "response.output_item.done",
            "output_index": 1,
            "item": {"type": "function_call", "call_id": "call_1", "name": "f", "arguments": '{"a":1}'},
        },
        {
            "type": "response.completed",
            "response": {"id": "resp_1", "status": "completed", "usage": {"input_tokens": 5, "output_tokens": 3}},
        },
    )
    response = adapter_for("openai-responses").from_wire_response(body)
    assert response.text() == "Hi"
    assert response.response_id == "resp_1"
    assert response.model == "gpt-4.1"
    calls = response.tool_calls()
    assert [(c.id, c.name, c.arguments) for c in calls] == [("call_1", "f", {"a": 1})]
    assert response.finish_reason == "tool_calls"
    assert response.usage == Usage(prompt_tokens=5, completion_tokens=3)


def test_responses_failed_event_raises() -> None:
    """A response.failed event should raise with the nested error message."""
    body = _sse(
        {
            "type": "response.failed",
            "response": {"error": {"code": "server_error", "message": "boom"}},
        }
    )
    with pytest.raises(ProviderError, match="boom"):
        adapter_for("openai-responses").from_wire_response(body)


def test_responses_continuation_sends_only_new_items(make_config) -> None:
    """Continuation should send previous_response_id plus only the new suffix."""
    from genbridge.session import SessionStore

    adapter = adapter_for("openai-responses")
    cfg = make_config("openai-responses", "gpt-4.1")
    first = adapter.to_wire_request(
        GenerateRequest(messages=(Message.user("a"),)), cfg, stream=False
    )
    store = SessionStore()
    store.record("conv", "resp_1", adapter.session_input(first))

    second = adapter.to_wire_request(
        GenerateRequest(messages=(Message.user("a"), Message.assistant("b"), Message.user("c"))),
        cfg,
        stream=False,
    )
    continued = adapter.continue_session(second, store.get("conv"))

    assert continued is not None
    assert continued["previous_response_id"] == "resp_1"
    assert [item["role"] for item in continued["input"]] == ["assistant", "user"]
    assert "previous_response_id" not in second


def test_responses_explicit_previous_id_is_not_overridden(make_config) -> None:
    """A caller-supplied previous_response_id wins over stored session state."""
    from genbridge.session import SessionStore

    adapter = adapter_for("openai-responses")
    cfg = make_config("openai-responses", "gpt-4.1")
    store = SessionStore()
    store.record("conv", "resp_old", [{"role": "user"}])
    wire = adapter.to_wire_request(
        GenerateRequest(
            messages=(Message.user("x"),),
            options=Options(previous_response_id="resp_explicit"),
        ),
        cfg,
        stream=False,
    )
    assert adapter.continue_session(wire, store.get("conv")) is None
    assert wire["previous_response_id"] == "resp_explicit"


# =============================================================================
# Anthropic
# =============================================================================


def test_anthropic_request_shape(make_config) -> None:
    """Characterize the minimal Messages payload, including the default max_tokens."""
    cfg = make_config("anthropic", ANTHROPIC_MODEL)
    payload = adapter_for("anthropic").to_wire_request(TERSE, cfg, stream=False)
    assert payload == {
        "model": ANTHROPIC_MODEL,
        "system": "Be terse",
        "messages": [{"role": "user", "content": [{"type": "text", "text": "2+2?"}]}],
        "max_tokens": 8192,
    }


def test_anthropic_headers(make_config) -> None:
    headers = adapter_for("anthropic").headers(make_config("anthropic", ANTHROPIC_MODEL), stream=False)
    assert headers["x-api-key"] == "test-key"
    assert headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in headers


def test_anthropic_options_are_clamped_and_mapped(make_config) -> None:
    """Temperature and max_tokens should be clamped to the Messages API limits."""
    cfg = make_config("anthropic", ANTHROPIC_MODEL)
    request = GenerateRequest(
        messages=(Message.user("weather?"),),
        options=Options(
            tools=(WEATHER,),
            parallel_tool_calls=False,
            temperature=1.5,
            max_tokens=500_000,
            stop=("END",),
        ),
    )
    payload = adapter_for("anthropic").to_wire_request(request, cfg, stream=True)
    assert payload["temperature"] == 1.0
    assert payload["max_tokens"] == 200_000
    assert payload["tool_choice"] == {"type": "auto", "disable_parallel_tool_use": True}
    assert payload["tools"][0]["input_schema"]["required"] == ["city"]
    assert payload["stop_sequences"] == ["END"]
    assert payload["stream"] is True


@pytest.mark.parametrize(
    ("choice", "expected"),
    [
        ("auto", {"type": "auto"}),
        ("required", {"type": "any"}),
        ("none", {"type": "none"}),
        ({"name": "get_weather"}, {"type": "tool", "name": "get_weather"}),
    ],
)
def test_anthropic_tool_choice(make_config, choice: Any, expected: dict) -> None:
    request = GenerateRequest(
        messages=(Message.user("x"),), options=Options(tools=(WEATHER,), tool_choice=choice)
    )
    payload = adapter_for("anthropic").to_wire_request(
        request, make_config("anthropic", ANTHROPIC_MODEL), stream=False
    )
    assert payload["tool_choice"] == expected


def test_anthropic_tool_results_merge_into_user_turn(make_config) -> None:
    """Tool results and the next user message should share one user turn."""
    request = GenerateRequest(
        messages=(
            Message.user("weather?"),
            Message.assistant(tool_calls=[CALL]),
            Message.tool_result("call_1", "sunny"),
            Message.user("thanks"),
        )
    )
    messages = adapter_for("anthropic").to_wire_request(
        request, make_config("anthropic", ANTHROPIC_MODEL), stream=False
    )["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[1]["content"] == [
        {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {"city": "Paris"}}
    ]
    assert messages[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "call_1", "content": "sunny"},
        {"type": "text", "text": "thanks"},
    ]


def test_anthropic_rejects_image_urls(make_config) -> None:
    """Anthropic only takes inline image data."""
    request = GenerateRequest(
        messages=(Message.user("", ContentItem.from_url("https://example.com/a.png", "image/png")),)
    )
    with pytest.raises(UnsupportedContentError, match="URL"):
        adapter_for("anthropic").to_wire_request(
            request, make_config("anthropic", ANTHROPIC_MODEL), stream=False
        )


def test_anthropic_response_parsing() -> None:
    """Characterize text, stop reason and cached-token usage extraction."""
    body = {
        "id": "msg_1",
        "type": "message",
        "model": ANTHROPIC_MODEL,
        "content": [
            {"type": "text", "text": "Let me check."},
            {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": 12, "output_tokens": 7, "cache_read_input_tokens": 3},
    }
    response = adapter_for("anthropic").from_wire_response(json.dumps(body).encode())
    assert response.text() == "Let me check."
    assert response.tool_calls()[0].arguments == {"city": "Paris"}
    assert response.finish_reason == "tool_calls"
    assert response.usage == Usage(prompt_tokens=12, completion_tokens=7, cached_tokens=3)


def test_anthropic_error_body_raises() -> None:
    """An overloaded_error body should be marked retryable."""
    body = b'{"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}'
    with pytest.raises(ProviderError) as exc:
        adapter_for("anthropic").from_wire_response(body)
    assert exc.value.retryable is True


def test_anthropic_stream_replay() -> None:
    """Tool JSON fragments and usage from message_delta should be aggregated."""
    body = _sse(
        (
            "message_start",
            {
                "type": "message_start",
                "message": {
                    "id": "msg_1",
                    "model": ANTHROPIC_MODEL,
                    "role": "assistant",
                    "usage": {"input_tokens": 10, "output_tokens": 1},
                },
            },
        ),
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}}),
        (
            "content_block_start",
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}},
            },
        ),
        ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"city":'}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '"Paris"}'}}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 20}}),
        ("message_stop", {"type": "message_stop"}),
    )
    response = adapter_for("anthropic").from_wire_response(body)
    assert response.text() == "Hello"
    assert response.response_id == "msg_1"
    assert response.tool_calls()[0].arguments == {"city": "Paris"}
    assert response.finish_reason == "tool_calls"
    assert response.usage == Usage(prompt_tokens=10, completion_tokens=20)


# =============================================================================
# Gemini
# =============================================================================


def test_gemini_endpoints_and_headers(make_config) -> None:
    """Gemini keys go in x-goog-api-key and streams use alt=sse."""
    adapter = adapter_for("gemini")
    cfg = make_config("gemini", GEMINI_MODEL)
    base = "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash"
    assert adapter.endpoint(cfg, stream=False) == f"{base}:generateContent"
    assert adapter.endpoint(cfg, stream=True) == f"{base}:streamGenerateContent?alt=sse"
    assert adapter.headers(cfg, stream=False)["x-goog-api-key"] == "test-key"


def test_gemini_request_shape(make_config) -> None:
    """Characterize the minimal generateContent payload."""
    cfg = make_config("gemini", GEMINI_MODEL)
    payload = adapter_for("gemini").to_wire_request(TERSE, cfg, stream=False)
    assert payload == {
        "contents": [{"role": "user", "parts": [{"text": "2+2?"}]}],
        "systemInstruction": {"parts": [{"text": "Be terse"}]},
    }


def test_gemini_tool_round_trip_and_config(make_config) -> None:
    """Tool results should be matched back to their function name."""
    request = GenerateRequest(
        messages=(
            Message.user("weather?"),
            Message.assistant(tool_calls=[CALL]),
            Message.tool_result("call_1", '{"temp": 20}'),
        ),
        options=Options(tools=(WEATHER,), tool_choice={"name": "get_weather"}, max_tokens=50),
    )
    payload = adapter_for("gemini").to_wire_request(
        request, make_config("gemini", GEMINI_MODEL), stream=False
    )
    assert payload["contents"][1] == {
        "role": "model",
        "parts": [{"functionCall": {"name": "get_weather", "args": {"city": "Paris"}}}],
    }
    assert payload["contents"][2] == {
        "role": "user",
        "parts": [{"functionResponse": {"name": "get_weather", "response": {"temp": 20}}}],
    }
    assert payload["toolConfig"] == {
        "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": ["get_weather"]}
    }
    assert payload["generationConfig"] == {"maxOutputTokens": 50}
    declaration = payload["tools"][0]["functionDeclarations"][0]
    assert declaration["name"] == "get_weather"
    assert declaration["parameters"]["properties"] == {"city": {"type": "string"}}


def test_gemini_inserts_leading_user_turn(make_config) -> None:
    """A conversation starting with the model gets a placeholder user turn."""
    request = GenerateRequest(messages=(Message.assistant("Hi, how can I help?"), Message.user("hi")))
    contents = adapter_for("gemini").to_wire_request(
        request, make_config("gemini", GEMINI_MODEL), stream=False
    )["contents"]
    assert contents[0] == {"role": "user", "parts": [{"text": " "}]}
    assert [c["role"] for c in contents] == ["user", "model", "user"]


def test_gemini_non_object_tool_output_is_wrapped(make_config) -> None:
    """Plain-text tool output should be wrapped as {"content": ...}."""
    request = GenerateRequest(
        messages=(Message.user("x"), Message.tool_result("c", "plain text", name="f"))
    )
    contents = adapter_for("gemini").to_wire_request(
        request, make_config("gemini", GEMINI_MODEL), stream=False
    )["contents"]
    # Consecutive user turns merge.
    assert len(contents) == 1
    assert contents[0]["parts"][1] == {
        "functionResponse": {"name": "f", "response": {"content": "plain text"}}
    }


def test_gemini_response_parsing() -> None:
    """Characterize role, text, tool call ids and usage extraction."""
    body = {
        "candidates": [
            {
                "index": 0,
                "content": {
                    "role": "model",
                    "parts": [{"text": "Hi"}, {"functionCall": {"name": "f", "args": {"a": 1}}}],
                },
                "finishReason": "STOP",
            }
        ],
        "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6},
        "modelVersion": GEMINI_MODEL,
        "responseId": "r1",
    }
    response = adapter_for("gemini").from_wire_response(json.dumps(body).encode())
    assert response.text() == "Hi"
    assert response.choices[0].message.role == "assistant"
    assert [(c.id, c.arguments) for c in response.tool_calls()] == [("call_0_0", {"a": 1})]
    assert response.finish_reason == "tool_calls"
    assert response.usage == Usage(prompt_tokens=4, completion_tokens=2, total_tokens=6)
    assert response.model == GEMINI_MODEL
    assert response.response_id == "r1"


def test_gemini_accepts_chunk_arrays_and_sse() -> None:
    """A JSON array of chunks and an SSE body should give the same reply."""
    chunks = [
        {"candidates": [{"content": {"role": "model", "parts": [{"text": "Hel"}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}]},
    ]
    adapter = adapter_for("gemini")
    assert adapter.from_wire_response(json.dumps(chunks).encode()).text() == "Hello"
    replayed = adapter.from_wire_response(_sse(*chunks))
    assert replayed.text() == "Hello"
    assert replayed.finish_reason == "stop"


def test_gemini_blocked_prompt_finishes_with_reason() -> None:
    """A prompt-feedback-only body should finish with the block reason."""
    body = b'{"promptFeedback": {"blockReason": "SAFETY"}}'
    response = adapter_for("gemini").from_wire_response(body)
    assert response.finish_reason == "SAFETY"
    assert response.text() == ""


def test_gemini_error_in_array_raises_rate_limit() -> None:
    """RESOURCE_EXHAUSTED inside a chunk array should raise RateLimitError."""
    body = b'[{"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}}]'
    with pytest.raises(RateLimitError, match="quota"):
        adapter_for("gemini").from_wire_response(body)


# =============================================================================
# Ollama and Grok
# =============================================================================


def test_ollama_request_shape(make_config) -> None:
    """Characterize /api/chat messages, images and options."""
    cfg = make_config("ollama", OLLAMA_MODEL)
    request = GenerateRequest(
        messages=(
            Message.system("Be terse"),
            Message.user("what is this?", ContentItem.from_bytes(b"\x89PNG", "image/png")),
        ),
        options=Options(temperature=0.1, max_tokens=20),
    )
    payload = adapter_for("ollama").to_wire_request(request, cfg, stream=True)
    assert payload == {
        "model": OLLAMA_MODEL,
        "messages": [
            {"role": "system", "content": "Be terse"},
            {"role": "user", "content": "", "images": ["iVBORw=="]},
        ],
        "stream": True,
        "options": {"temperature": 0.1, "num_predict": 20},
    }
    assert "Authorization" not in adapter_for("ollama").headers(cfg, stream=True)


def test_ollama_response_and_ndjson_replay() -> None:
    """A single object and an NDJSON body should both parse."""
    adapter = adapter_for("ollama")
    body = {
        "model": OLLAMA_MODEL,
        "message": {"role": "assistant", "content": "hi"},
        "done": True,
        "done_reason": "stop",
        "prompt_eval_count": 5,
        "eval_count": 2,
    }
    response = adapter.from_wire_response(json.dumps(body).encode())
    assert response.text() == "hi"
    assert response.finish_reason == "stop"
    assert response.usage == Usage(prompt_tokens=5, completion_tokens=2)

    streamed = b"\n".join(
        json.dumps(c).encode()
        for c in (
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": True, "done_reason": "stop"},
        )
    )
    assert adapter.from_wire_response(streamed).text() == "Hello"


def test_ollama_tool_calls_finish_with_tool_calls() -> None:
    """Tool calls get positional ids and finish with "tool_calls"."""
    body = {
        "message": {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": "f", "arguments": {"x": 1}}}],
        },
        "done": True,
        "done_reason": "stop",
    }
    response = adapter_for("ollama").from_wire_response(json.dumps(body).encode())
    assert response.finish_reason == "tool_calls"
    assert [(c.id, c.name, c.arguments) for c in response.tool_calls()] == [("call_0", "f", {"x": 1})]


def test_ollama_error_body_raises() -> None:
    with pytest.raises(ProviderError, match="model not found"):
        adapter_for("ollama").from_wire_response(b'{"error": "model not found"}')


def test_grok_uses_openai_wire_format(make_config) -> None:
    """Grok speaks chat completions against the xAI endpoint."""
    cfg = make_config("grok", "grok-3-mini")
    adapter = adapter_for("grok")
    payload = adapter.to_wire_request(TERSE, cfg, stream=False)
    assert payload["messages"][0] == {"role": "system", "content": "Be terse"}
    assert adapter.headers(cfg, stream=False)["Authorization"] == "Bearer test-key"
    assert adapter.api_key_env == "XAI_API_KEY"
