"""Client: one normalized entry point over every provider adapter.

A ``Client`` owns its transport, session store and capability table. Each
call gets its own tracker and, for streams, its own producer task; nothing
mutable is shared between concurrent calls except the session store.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, aclosing
from dataclasses import replace
import logging
from typing import TYPE_CHECKING, Any

from genbridge.aggregator import StreamAggregator
from genbridge.capabilities import (
    CAN_EXECUTE_TOOLS_IN_PARALLEL,
    CAN_STREAM,
    CAN_USE_TOOLS,
    IS_MULTIMODAL,
    SUPPORTS_SESSION_CONTINUATION,
)
from genbridge.errors import (
    ConfigurationError,
    ContinuationError,
    GenbridgeError,
    InternalError,
    TransportError,
    UnimplementedFeatureError,
)
from genbridge.frames import aiter_frames
from genbridge.lifecycle import CallTracker
from genbridge.models import StreamEvent
from genbridge.providers import adapter_for
from genbridge.providers._errors import is_stream_unsupported
from genbridge.providers._utils import dumps
from genbridge.retry import retry_async
from genbridge.session import SessionStore
from genbridge.stream import EventStream, fail_stream, pump_frames
from genbridge.transport import HTTPXTransport, WireRequest

if TYPE_CHECKING:
    from genbridge.capabilities import Capabilities
    from genbridge.config import Config
    from genbridge.lifecycle import CallContext, Observer, UsageListener
    from genbridge.models import GenerateRequest, GenerateResponse
    from genbridge.options import Options
    from genbridge.transport import Transport, WireResponse

logger = logging.getLogger(__name__)


class Client:
    """Issue normalized generate and stream calls against one provider.

    Example:
        config = Config(provider="openai", model="gpt-4o-mini")
        async with Client(config) as client:
            reply = await client.generate(
                GenerateRequest(messages=(Message.user("2+2?"),))
            )
            print(reply.text())
    """

    def __init__(
        self,
        config: Config,
        *,
        transport: Transport | None = None,
        observer: Observer | None = None,
        usage_listener: UsageListener | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        self.config = config
        self.adapter = adapter_for(config.provider)
        self.capabilities: Capabilities = self.adapter.capabilities(config.model)
        self._owns_transport = transport is None
        self._transport: Transport = transport or HTTPXTransport(timeout_s=config.timeout_s)
        self._observer = observer
        self._usage_listener = usage_listener
        self.sessions = session_store or SessionStore(
            ttl_s=config.session_ttl_s, disable_ttl_s=config.stream_disable_ttl_s
        )

    def implements(self, feature: str) -> bool:
        """Return whether this client supports *feature*."""
        return self.capabilities.implements(feature)

    # -- public API ----------------------------------------------------------

    async def generate(
        self, request: GenerateRequest, *, ctx: CallContext | None = None
    ) -> GenerateResponse:
        """Send *request* and return the complete normalized response."""
        self._check(request, stream=False)
        wire, full_input = self._build(request, stream=False)
        tracker = self._tracker("chat", ctx)
        tracker.start(request, wire.body)
        try:
            response, body = await retry_async(
                lambda: self._exchange(wire), policy=self.config.retry
            )
        except asyncio.CancelledError as e:
            self._end_quietly(tracker, e)
            raise
        except Exception as e:
            error = self._classify(request, e)
            self._end_quietly(tracker, error)
            if error is e:
                raise
            raise error from e

        self._remember(request, response, full_input)
        try:
            tracker.publish_usage(response.usage)
        except GenbridgeError as e:
            self._end_quietly(tracker, e)
            raise
        tracker.end(response=response, response_json=body)
        return response

    async def stream(
        self, request: GenerateRequest, *, ctx: CallContext | None = None
    ) -> EventStream:
        """Start a streaming call and return its event stream.

        Capability and content checks run before anything is sent; transport
        and provider failures arrive as error events on the stream.
        """
        self._check(request, stream=True)
        wire, full_input = self._build(request, stream=True)
        tracker = self._tracker("stream", ctx)
        tracker.start(request, wire.body)
        events = EventStream()

        async def produce(stream: EventStream) -> None:
            await self._produce(request, wire, full_input, tracker, stream)

        events.start(produce)
        return events

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.aclose()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- request preparation -----------------------------------------------

    def _check(self, request: GenerateRequest, *, stream: bool) -> None:
        if not request.messages:
            raise ConfigurationError(
                "GenerateRequest needs at least one message",
                hint="Pass messages=(Message.user('...'),).",
            )
        opts = request.effective_options()
        required: list[str] = []
        if stream:
            required.append(CAN_STREAM)
        if opts.tools:
            required.append(CAN_USE_TOOLS)
        if opts.parallel_tool_calls:
            required.append(CAN_EXECUTE_TOOLS_IN_PARALLEL)
        if opts.previous_response_id:
            required.append(SUPPORTS_SESSION_CONTINUATION)
        if any(
            not item.is_text for m in request.messages for item in m.primary_items()
        ):
            required.append(IS_MULTIMODAL)
        for feature in required:
            if not self.implements(feature):
                raise UnimplementedFeatureError(
                    feature,
                    provider=self.adapter.name,
                    model=self.config.model,
                    hint="Check client.implements(...) before relying on this feature.",
                )

    def _build(
        self, request: GenerateRequest, *, stream: bool
    ) -> tuple[WireRequest, list[Any] | None]:
        wire = self.adapter.to_wire_request(request, self.config, stream=stream)
        full_input: list[Any] | None = None
        if request.conversation_id and self.implements(SUPPORTS_SESSION_CONTINUATION):
            full_input = self.adapter.session_input(wire)
            continued = self.adapter.continue_session(
                wire, self.sessions.get(request.conversation_id)
            )
            if continued is not None:
                wire = continued
        return (
            WireRequest(
                url=self.adapter.endpoint(self.config, stream=stream),
                body=dumps(wire),
                headers=self.adapter.headers(self.config, stream=stream),
                stream=stream,
            ),
            full_input,
        )

    def _tracker(self, kind: str, ctx: CallContext | None) -> CallTracker:
        return CallTracker(
            provider=self.adapter.name,
            model=self.config.model,
            kind=kind,
            observer=self._observer,
            usage_listener=self._usage_listener,
            ctx=ctx,
        )

    # -- exchanges -----------------------------------------------------------

    async def _fetch(self, wire: WireRequest) -> bytes:
        async with self._transport.send(wire) as resp:
            body = await resp.aread()
            status, headers = resp.status_code, resp.headers
        if not 200 <= status < 300:
            raise self.adapter.parse_error(status, body, headers)
        return body

    async def _exchange(self, wire: WireRequest) -> tuple[GenerateResponse, bytes]:
        body = await self._fetch(wire)
        return self.adapter.from_wire_response(body), body

    async def _open(self, wire: WireRequest) -> tuple[AsyncExitStack, WireResponse]:
        stack = AsyncExitStack()
        try:
            resp = await stack.enter_async_context(self._transport.send(wire))
            if not 200 <= resp.status_code < 300:
                body = await resp.aread()
                raise self.adapter.parse_error(resp.status_code, body, resp.headers)
        except BaseException:
            await stack.aclose()
            raise
        return stack, resp

    async def _produce(
        self,
        request: GenerateRequest,
        wire: WireRequest,
        full_input: list[Any] | None,
        tracker: CallTracker,
        stream: EventStream,
    ) -> None:
        opts = request.effective_options()
        stream_key = self.adapter.base_url(self.config)
        try:
            reason = self.sessions.disabled_reason(stream_key)
            if reason is not None and opts.allow_stream_fallback:
                await self._fallback(request, tracker, stream, reason=reason)
                return

            try:
                stack, resp = await retry_async(
                    lambda: self._open(wire), policy=self.config.retry
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = self._classify(request, e)
                if self._can_fall_back(error, opts):
                    reason = f"streaming unavailable: {error}"
                    if is_stream_unsupported(error):
                        self.sessions.disable(stream_key, reason)
                    await self._fallback(request, tracker, stream, reason=reason)
                    return
                await fail_stream(error, agg=None, tracker=tracker, stream=stream)
                return

            async with stack:
                if _is_json(resp.headers) and self.adapter.framing == "sse":
                    # The server ignored the stream flag or sent an error envelope.
                    body = await resp.aread()
                    await self._deliver_whole(
                        request,
                        body,
                        full_input,
                        tracker,
                        stream,
                        reason="provider returned a non-streaming body",
                    )
                    return
                frames = aiter_frames(resp.aiter_lines(), self.adapter.framing)
                async with aclosing(frames):
                    await pump_frames(
                        frames,
                        decoder=self.adapter.new_decoder(),
                        agg=StreamAggregator(),
                        tracker=tracker,
                        stream=stream,
                    )
            if tracker.info.exception is None and stream.response is not None:
                self._remember(request, stream.response, full_input)
            elif tracker.info.exception is not None:
                self._classify(request, tracker.info.exception)
        except asyncio.CancelledError as e:
            self._end_quietly(tracker, e, response=stream.response)
            raise
        except Exception as e:
            if tracker.ended:
                raise
            error = self._classify(request, e)
            await fail_stream(error, agg=None, tracker=tracker, stream=stream)

    async def _fallback(
        self,
        request: GenerateRequest,
        tracker: CallTracker,
        stream: EventStream,
        *,
        reason: str,
    ) -> None:
        """Serve a stream with one non-streaming call, flagged as a fallback."""
        logger.info("Falling back to a non-streaming call: %s", reason)
        wire, full_input = self._build(request, stream=False)
        tracker.info.request_json = wire.body
        try:
            body = await retry_async(lambda: self._fetch(wire), policy=self.config.retry)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = self._classify(request, e)
            await fail_stream(error, agg=None, tracker=tracker, stream=stream)
            return
        await self._deliver_whole(request, body, full_input, tracker, stream, reason=reason)

    async def _deliver_whole(
        self,
        request: GenerateRequest,
        body: bytes,
        full_input: list[Any] | None,
        tracker: CallTracker,
        stream: EventStream,
        *,
        reason: str,
    ) -> None:
        try:
            response = self.adapter.from_wire_response(body)
        except GenbridgeError as e:
            error = self._classify(request, e)
            await fail_stream(error, agg=None, tracker=tracker, stream=stream)
            return
        response = replace(response, fallback=True, fallback_reason=reason)
        stream.response = response
        stream.usage = response.usage
        stream.fallback = True
        await stream.emit(StreamEvent(response=response))
        self._remember(request, response, full_input)
        try:
            tracker.publish_usage(response.usage)
        except GenbridgeError as e:
            await fail_stream(e, agg=None, tracker=tracker, stream=stream)
            return
        try:
            tracker.end(response=response, response_json=body)
        except GenbridgeError as e:
            await stream.emit(StreamEvent(error=e))

    # -- error and session bookkeeping --------------------------------------

    def _can_fall_back(self, error: BaseException, opts: Options) -> bool:
        if not opts.allow_stream_fallback or isinstance(error, ContinuationError):
            return False
        return is_stream_unsupported(error) or isinstance(error, TransportError)

    def _classify(self, request: GenerateRequest, exc: BaseException) -> BaseException:
        """Attach provider context, wrap foreign errors, apply session policy."""
        if isinstance(exc, GenbridgeError):
            if getattr(exc, "provider", self.adapter.name) is None:
                exc.provider = self.adapter.name  # type: ignore[attr-defined]
            error: BaseException = exc
        else:
            error = InternalError(f"{self.adapter.name} call failed: {exc}")
            error.__cause__ = exc
        if (
            isinstance(error, ContinuationError)
            and request.conversation_id
            and self.config.reset_session_on_continuation_error
        ):
            logger.info("Forgetting session %s after %s", request.conversation_id, error)
            self.sessions.forget(request.conversation_id)
        return error

    def _remember(
        self,
        request: GenerateRequest,
        response: GenerateResponse,
        full_input: list[Any] | None,
    ) -> None:
        if full_input is None or not request.conversation_id or not response.response_id:
            return
        self.sessions.record(request.conversation_id, response.response_id, full_input)

    @staticmethod
    def _end_quietly(
        tracker: CallTracker,
        error: BaseException,
        *,
        response: GenerateResponse | None = None,
    ) -> None:
        try:
            tracker.end(response=response, error=error)
        except GenbridgeError as observer_error:
            logger.warning("Observer failed while recording %s: %s", error, observer_error)


def _is_json(headers: Any) -> bool:
    content_type = headers.get("content-type") or headers.get("Content-Type") or ""
    return content_type.split(";")[0].strip().lower() == "application/json"
