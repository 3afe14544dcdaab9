"""Shared provider-side error helpers.

Adapters map non-2xx bodies and in-stream error envelopes through
:func:`provider_error` so retry metadata and continuation failures are
classified once, at the wire boundary, and carried as exception types.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

from genbridge._http import (
    RETRYABLE_STATUS_CODES,
    STREAM_UNSUPPORTED_STATUS_CODES,
    snippet,
)
from genbridge.errors import ContinuationError, ProviderError, RateLimitError

if TYPE_CHECKING:
    from collections.abc import Mapping

# Provider error codes that mean the continuation token is unknown or stale.
_CONTINUATION_CODES = frozenset({"previous_response_not_found"})

# Phrases providers use when tool results do not match earlier tool calls.
_CONTINUATION_MARKERS = (
    "previous_response_id",
    "previous response",
    "no tool output found",
    "tool_call_id",
    "tool_use_id",
    "tool_result",
    "function_response",
)

_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def error_fields(payload: Any) -> tuple[str, str | None, str | None]:
    """Extract ``(message, type, code)`` from a decoded error payload.

    Accepts ``{"error": {...}}``, ``{"error": "text"}``, an Anthropic-style
    ``{"type": "error", "error": {...}}`` and Gemini's ``status`` field.
    """
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if not isinstance(payload, dict):
        return "", None, None
    err: Any = payload.get("error", payload)
    if isinstance(err, str):
        return err, None, None
    if not isinstance(err, dict):
        return "", None, None
    message = err.get("message")
    err_type = err.get("type") or err.get("status")
    code = err.get("code")
    return (
        message if isinstance(message, str) else "",
        err_type if isinstance(err_type, str) else None,
        str(code) if code is not None and not isinstance(code, dict) else None,
    )


def _retry_info_seconds(payload: Any) -> float | None:
    """Extract a Google API-style ``RetryInfo`` delay from an error body.

    Shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    if not isinstance(payload, dict):
        return None
    error: Any = payload.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def retry_after_s(headers: Mapping[str, str] | None, payload: Any = None) -> float | None:
    """Return the server-requested retry delay in seconds, if any."""
    if headers is not None:
        raw_ms = headers.get("retry-after-ms")
        if raw_ms:
            try:
                value = float(raw_ms) / 1000.0
            except ValueError:
                value = -1.0
            if value >= 0:
                return value
        raw = headers.get("retry-after")
        if raw:
            try:
                value = float(raw)
            except ValueError:
                value = -1.0
            if value >= 0:
                return value
    return _retry_info_seconds(payload)


def _auth_hint(env_var: str | None, status_code: int | None, message: str) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    lower = message.lower()
    if status_code in {401, 403} or (
        status_code == 400 and ("api key" in lower or "api_key" in lower)
    ):
        name = env_var or "the provider API key"
        return f"Check credentials/permissions (try setting {name} or Config.api_key)."
    return None


def is_continuation_failure(
    status_code: int | None, message: str, code: str | None
) -> bool:
    """Whether a rejection concerns continuation state rather than the request."""
    if code in _CONTINUATION_CODES:
        return True
    if status_code not in (None, 400, 404, 409, 422):
        return False
    lower = message.lower()
    return any(marker in lower for marker in _CONTINUATION_MARKERS)


def is_stream_unsupported(error: BaseException) -> bool:
    """Whether *error* says the endpoint cannot stream (vs. a bad request)."""
    if not isinstance(error, ProviderError) or isinstance(error, ContinuationError):
        return False
    if error.status_code in STREAM_UNSUPPORTED_STATUS_CODES:
        return True
    return error.status_code == 400 and "stream" in str(error).lower()


def provider_error(
    *,
    provider: str,
    status_code: int | None,
    body: bytes | str | None,
    headers: Mapping[str, str] | None = None,
    payload: Any = None,
    env_var: str | None = None,
) -> ProviderError:
    """Map an HTTP failure or in-stream error envelope to a ``ProviderError``.

    *payload* is the already decoded body when the caller has it; otherwise
    *body* is decoded here and left as a snippet if it is not JSON.
    """
    if payload is None and body:
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
    message, err_type, code = error_fields(payload)
    if not message:
        message = snippet(body) if body else ""

    retry_after = retry_after_s(headers, payload)
    retryable = retry_after is not None or (
        isinstance(status_code, int) and status_code in RETRYABLE_STATUS_CODES
    )
    if err_type in {"overloaded_error", "rate_limit_error", "server_error", "RESOURCE_EXHAUSTED", "UNAVAILABLE"}:
        retryable = True

    err_cls: type[ProviderError] = ProviderError
    if is_continuation_failure(status_code, message, code):
        err_cls = ContinuationError
        retryable = False
    elif status_code == 429 or err_type in {"rate_limit_error", "RESOURCE_EXHAUSTED"}:
        err_cls = RateLimitError

    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    text = f"{provider} request failed{status_note}"
    if message:
        text = f"{text}: {message}"
    return err_cls(
        text,
        hint=_auth_hint(env_var, status_code, message),
        status_code=status_code,
        error_type=err_type,
        code=code,
        provider=provider,
        retryable=retryable,
        retry_after_s=retry_after,
    )
