"""Exception hierarchy for genbridge.

Every error raised by the library derives from :class:`GenbridgeError` and
carries an optional ``hint``. Wrapped causes are kept on ``__cause__`` so
callers classify failures by type, never by message text.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class GenbridgeError(Exception):
    """Base exception for all genbridge errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(GenbridgeError):
    """Configuration or option validation failed."""


class UnimplementedFeatureError(GenbridgeError):
    """The caller asked for a capability the provider does not support.

    Raised before any request is sent.
    """

    def __init__(
        self,
        feature: str,
        *,
        provider: str | None = None,
        model: str | None = None,
        hint: str | None = None,
    ) -> None:
        target = provider or "provider"
        if model:
            target = f"{target} model {model!r}"
        super().__init__(f"{target} does not implement {feature!r}", hint=hint)
        self.feature = feature
        self.provider = provider
        self.model = model


class UnsupportedContentError(GenbridgeError):
    """A request item cannot be represented in the provider's wire format."""

    def __init__(
        self, message: str, *, provider: str | None = None, hint: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider


class TransportError(GenbridgeError):
    """Connection, timeout or read failure below the protocol layer."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.phase = phase


class ProtocolError(GenbridgeError):
    """A provider payload or stream frame could not be decoded.

    ``snippet`` holds at most the first 256 bytes of the offending body.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        provider: str | None = None,
        snippet: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.snippet = snippet


class ProviderError(GenbridgeError):
    """The provider answered with a non-2xx status or an error envelope.

    The provider's own ``error_type`` and ``code`` are kept verbatim next to
    the HTTP status so callers can branch on them.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        error_type: str | None = None,
        code: str | None = None,
        provider: str | None = None,
        retryable: bool | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.error_type = error_type
        self.code = code
        self.provider = provider
        self.retryable = retryable
        self.retry_after_s = retry_after_s


class RateLimitError(ProviderError):
    """Rate limit exceeded (HTTP 429)."""


class ContinuationError(ProviderError):
    """The provider rejected a continuation token or tool-result correlation.

    Never retried and never silently replaced by a fresh call.
    """


class ObserverError(GenbridgeError):
    """A lifecycle observer or usage listener raised."""


class InternalError(GenbridgeError):
    """A genbridge internal error (bug) or invariant violation."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)


def find_cause(exc: BaseException, kind: type[BaseException]) -> BaseException | None:
    """Return the first exception of type *kind* in the chain of *exc*."""
    for e in _walk_exception_chain(exc):
        if isinstance(e, kind):
            return e
    return None


def error_code(exc: BaseException) -> str:
    """Return a short, stable classification string for *exc*."""
    if isinstance(exc, asyncio.CancelledError):
        return "canceled"
    if isinstance(exc, ContinuationError):
        return "continuation"
    if isinstance(exc, RateLimitError):
        return "rate_limit"
    if isinstance(exc, ProviderError):
        return "provider"
    if isinstance(exc, ProtocolError):
        return "protocol"
    if isinstance(exc, TransportError):
        return "transport"
    if isinstance(exc, UnimplementedFeatureError):
        return "unimplemented"
    if isinstance(exc, UnsupportedContentError):
        return "unsupported_content"
    if isinstance(exc, ObserverError):
        return "observer"
    if isinstance(exc, ConfigurationError):
        return "configuration"
    return "internal"
