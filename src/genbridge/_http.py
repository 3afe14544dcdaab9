"""Small HTTP-related constants shared across genbridge.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Retryable status codes shared by provider error mapping and core retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

# Statuses that mean "this endpoint cannot stream" rather than "the call is bad".
STREAM_UNSUPPORTED_STATUS_CODES: frozenset[int] = frozenset({404, 405, 501})

# Upper bound for body excerpts attached to errors.
SNIPPET_LIMIT = 256


def snippet(body: bytes | str | None, limit: int = SNIPPET_LIMIT) -> str:
    """Return at most *limit* bytes of *body* as text for diagnostics."""
    if body is None:
        return ""
    raw = body.encode("utf-8", "replace") if isinstance(body, str) else bytes(body)
    # A split multi-byte character is dropped so the excerpt stays within limit.
    return raw[:limit].decode("utf-8", "ignore")
