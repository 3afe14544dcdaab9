"""Call lifecycle: observer hooks, usage listener, and exactly-once guards.

Observers are fast, synchronous taps invoked from the task performing the
call. Their exceptions fail the call (wrapped as ``ObserverError``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from genbridge.errors import InternalError, ObserverError, error_code

if TYPE_CHECKING:
    from collections.abc import Mapping

    from genbridge.models import GenerateRequest, GenerateResponse, Usage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallContext:
    """Immutable bag of call-scoped values (correlation ids and the like)."""

    values: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def with_value(self, key: str, value: Any) -> CallContext:
        """Return a new context with *key* set to *value*."""
        updated = dict(self.values)
        updated[key] = value
        return CallContext(MappingProxyType(updated))

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


@dataclass
class CallInfo:
    """Tracing record for one call.

    Created at call start, completed once at call end, then handed to the
    observer and dropped.
    """

    provider: str
    model: str
    kind: str = "chat"
    request: GenerateRequest | None = None
    request_json: bytes = b""
    response: GenerateResponse | None = None
    response_json: bytes = b""
    usage: Usage | None = None
    finish_reason: str = ""
    stream_text: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    error_code: str | None = None
    exception: BaseException | None = None
    fallback: bool = False


@runtime_checkable
class Observer(Protocol):
    """Tracing hooks around each model call."""

    def on_call_start(self, ctx: CallContext, info: CallInfo) -> CallContext:
        """Record the start of a call; may return an enriched context."""
        ...

    def on_call_end(self, ctx: CallContext, info: CallInfo) -> None:
        """Record the end of a call (exactly once per call)."""
        ...

    def on_stream_delta(self, ctx: CallContext, data: bytes) -> None:
        """Receive raw text of one meaningful stream delta."""
        ...


@runtime_checkable
class UsageListener(Protocol):
    """Receives token usage, at most once per call."""

    def on_usage(self, model: str, usage: Usage) -> None:
        """Record usage for *model*."""
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CallTracker:
    """Drive the observer and usage listener for a single call.

    ``end`` fires the observer at most once and ``publish_usage`` the
    listener at most once, no matter how many code paths reach them.
    """

    def __init__(
        self,
        *,
        provider: str,
        model: str,
        kind: str,
        observer: Observer | None = None,
        usage_listener: UsageListener | None = None,
        ctx: CallContext | None = None,
    ) -> None:
        self.info = CallInfo(provider=provider, model=model, kind=kind)
        self.ctx = ctx if ctx is not None else CallContext()
        self._observer = observer
        self._usage_listener = usage_listener
        self._started = False
        self._ended = False
        self._usage_published = False

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def usage_published(self) -> bool:
        return self._usage_published

    def start(self, request: GenerateRequest, request_json: bytes) -> CallContext:
        """Fire ``on_call_start`` and return the (possibly enriched) context."""
        if self._started:
            raise InternalError("CallTracker.start called twice")
        self._started = True
        self.info.request = request
        self.info.request_json = request_json
        self.info.started_at = _now()
        if self._observer is not None:
            try:
                new_ctx = self._observer.on_call_start(self.ctx, self.info)
            except Exception as e:
                # No call was started, so there is nothing to end.
                self._ended = True
                logger.warning("Observer on_call_start failed: %s", e)
                raise ObserverError(
                    f"observer on_call_start failed: {e}",
                    hint="Lifecycle observers must not raise.",
                ) from e
            if new_ctx is not None:
                self.ctx = new_ctx
        return self.ctx

    def delta(self, data: bytes) -> None:
        """Forward one stream delta to the observer."""
        if self._observer is None or not data:
            return
        try:
            self._observer.on_stream_delta(self.ctx, data)
        except Exception as e:
            logger.warning("Observer on_stream_delta failed: %s", e)
            raise ObserverError(f"observer on_stream_delta failed: {e}") from e

    def publish_usage(self, usage: Usage | None) -> None:
        """Report usage to the listener unless it was already reported."""
        if usage is None or usage.is_empty() or self._usage_published:
            return
        self._usage_published = True
        self.info.usage = usage
        if self._usage_listener is None:
            return
        logger.debug("Publishing usage for %s: %s", self.info.model, usage)
        try:
            self._usage_listener.on_usage(self.info.model, usage)
        except Exception as e:
            logger.warning("Usage listener failed: %s", e)
            raise ObserverError(f"usage listener failed: {e}") from e

    def end(
        self,
        *,
        response: GenerateResponse | None = None,
        response_json: bytes = b"",
        error: BaseException | None = None,
    ) -> None:
        """Complete the call record and fire ``on_call_end`` once."""
        if self._ended:
            return
        self._ended = True
        info = self.info
        info.completed_at = _now()
        if response is not None:
            info.response = response
            info.fallback = response.fallback
            if response.model:
                info.model = response.model
            if response.usage is not None and info.usage is None:
                info.usage = response.usage
            if response.choices:
                info.finish_reason = response.choices[0].finish_reason
                info.stream_text = response.text().strip()
        if response_json:
            info.response_json = response_json
        if error is not None:
            info.exception = error
            info.error = str(error) or type(error).__name__
            info.error_code = error_code(error)
        if self._observer is None:
            return
        try:
            self._observer.on_call_end(self.ctx, info)
        except Exception as e:
            logger.warning("Observer on_call_end failed: %s", e)
            raise ObserverError(
                f"observer on_call_end failed: {e}",
                hint="Lifecycle observers must not raise.",
            ) from e
