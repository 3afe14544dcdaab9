"""Shared utilities for provider adapters."""

from __future__ import annotations

from copy import deepcopy
import json
from typing import Any

from genbridge._http import snippet
from genbridge.errors import ProtocolError

# JSON Schema keys some providers reject.
_UNSUPPORTED_SCHEMA_KEYS = frozenset({"additionalProperties", "$schema"})


def dumps(payload: Any) -> bytes:
    """Encode a wire payload compactly."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def loads(body: bytes | str, *, provider: str, what: str = "response") -> Any:
    """Decode JSON from a provider, raising ``ProtocolError`` with a snippet."""
    try:
        return json.loads(body)
    except ValueError as e:
        raise ProtocolError(
            f"{provider} {what} is not valid JSON: {e}",
            provider=provider,
            snippet=snippet(body),
        ) from e


def unparseable(body: bytes | str, *, provider: str) -> ProtocolError:
    """Build the error for a body that matched no known response shape."""
    return ProtocolError(
        f"{provider} response did not match any known shape",
        provider=provider,
        snippet=snippet(body),
        hint="Check base_url points at the provider API and not a proxy page.",
    )


def sanitize_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Drop schema keys that stricter providers refuse.

    Removes ``additionalProperties``, ``$schema`` and ``x-*`` extensions at
    every depth, leaving property names untouched.
    """

    def walk(node: Any, *, in_properties: bool = False) -> Any:
        if isinstance(node, list):
            return [walk(item) for item in node]
        if not isinstance(node, dict):
            return node
        updated: dict[str, Any] = {}
        for key, value in node.items():
            if not in_properties and (
                key in _UNSUPPORTED_SCHEMA_KEYS or key.startswith("x-")
            ):
                continue
            updated[key] = walk(value, in_properties=(key == "properties" and not in_properties))
        return updated

    return walk(deepcopy(schema))


def tool_output_text(content: str) -> str:
    """Tool results must be non-empty for most providers."""
    return content if content.strip() else "{}"


def as_int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0
