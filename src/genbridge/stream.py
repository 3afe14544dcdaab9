"""Single-producer, single-consumer event stream.

One producer task reads the transport, runs the aggregation loop, and
writes ``StreamEvent`` objects into a queue holding at most one item. The
consumer iterates the ``EventStream``; a slow consumer blocks the producer.
Closing or cancelling the consumer cancels the producer, which still ends
the call exactly once and releases its transport before finishing.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from genbridge.errors import GenbridgeError, InternalError
from genbridge.models import StreamEvent

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from genbridge.aggregator import StreamAggregator, StreamDecoder
    from genbridge.frames import Frame
    from genbridge.lifecycle import CallTracker
    from genbridge.models import GenerateResponse, Usage

logger = logging.getLogger(__name__)

_CLOSED: Any = object()


class EventStream:
    """Async iterator over the events of one streaming call.

    Use as an async context manager, or call :meth:`aclose` when done, so the
    producer never outlives the consumer::

        async with await client.stream(request) as events:
            async for event in events:
                ...

    After the stream is exhausted, :attr:`response` holds the last assembled
    response and :attr:`usage` the reported token usage, if any.
    """

    def __init__(self, *, maxsize: int = 1) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task[None] | None = None
        self._exhausted = False
        self._stopped = False
        self.closing = False
        self.response: GenerateResponse | None = None
        self.usage: Usage | None = None
        self.fallback = False

    def start(self, producer: Callable[[EventStream], Awaitable[None]]) -> None:
        """Launch *producer* as the single task feeding this stream."""
        if self._task is not None:
            raise InternalError("EventStream already started")
        self._task = asyncio.get_running_loop().create_task(self._run(producer))

    async def _run(self, producer: Callable[[EventStream], Awaitable[None]]) -> None:
        try:
            await producer(self)
        except Exception as e:
            if self.closing:
                raise
            logger.debug("Stream producer failed: %s", e)
            await self._queue.put(StreamEvent(error=e))
        # Cancellation skips the marker: the consumer is already gone.
        await self._queue.put(_CLOSED)

    async def emit(self, event: StreamEvent) -> None:
        """Hand *event* to the consumer, waiting while it is busy."""
        await self._queue.put(event)

    @property
    def done(self) -> bool:
        """Whether the producer task has finished."""
        return self._task is not None and self._task.done()

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._exhausted:
            raise StopAsyncIteration
        try:
            item = await self._queue.get()
        except asyncio.CancelledError:
            self._exhausted = True
            await self._stop_producer(raise_errors=False)
            raise
        if item is _CLOSED:
            self._exhausted = True
            await self._stop_producer()
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Stop the producer (if still running) and close the stream."""
        self._exhausted = True
        await self._stop_producer()

    async def _stop_producer(self, *, raise_errors: bool = True) -> None:
        task = self._task
        if task is None or self._stopped:
            return
        self._stopped = True
        self.closing = True
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if not raise_errors:
            logger.warning("Stream producer failed during shutdown: %s", exc)
            return
        # Producer failures other than cancellation (observer errors).
        raise exc

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _response_json(response: GenerateResponse | None) -> bytes:
    if response is None:
        return b""
    body = {
        "model": response.model,
        "response_id": response.response_id,
        "fallback": response.fallback,
        "choices": [
            {
                "index": c.index,
                "finish_reason": c.finish_reason,
                "role": c.message.role,
                "content": c.message.content,
                "tool_calls": [
                    {"id": t.id, "name": t.name, "arguments": t.raw_arguments}
                    for t in c.message.tool_calls
                ],
            }
            for c in response.choices
        ],
    }
    if response.usage is not None:
        body["usage"] = {
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "total_tokens": response.usage.total_tokens,
        }
    return json.dumps(body).encode("utf-8")


async def pump_frames(
    frames: AsyncIterator[Frame],
    *,
    decoder: StreamDecoder,
    agg: StreamAggregator,
    tracker: CallTracker,
    stream: EventStream,
) -> None:
    """Run the aggregation loop until the frames end, fail, or are cancelled.

    Always ends the call exactly once through *tracker*. Decoding and
    transport errors are emitted as a single error event; cancellation
    propagates after the call is ended.
    """
    try:
        async for frame in frames:
            if stream.closing:
                raise asyncio.CancelledError
            result = decoder.decode(frame, agg)
            if result.delta:
                tracker.delta(result.delta.encode("utf-8"))
            if result.choices:
                response = agg.response(result.choices)
                agg.last_response = response
                stream.response = response
                await stream.emit(StreamEvent(response=response))
            if result.done:
                break
    except asyncio.CancelledError as e:
        logger.debug("Stream cancelled; ending call with partial state")
        stream.response = agg.partial_response()
        tracker.end(response=stream.response, error=e)
        raise
    except Exception as e:
        error = e
        if not isinstance(e, GenbridgeError):
            error = InternalError(f"stream processing failed: {e}")
            error.__cause__ = e
        await fail_stream(error, agg=agg, tracker=tracker, stream=stream)
        return

    await _complete(agg=agg, tracker=tracker, stream=stream)


async def _complete(
    *, agg: StreamAggregator, tracker: CallTracker, stream: EventStream
) -> None:
    response = agg.partial_response()
    if agg.active and agg.last_response is None:
        logger.debug("Stream ended without a finish signal")
    stream.response = response
    stream.usage = agg.pending_usage
    try:
        tracker.publish_usage(agg.pending_usage)
    except GenbridgeError as e:
        await fail_stream(e, agg=agg, tracker=tracker, stream=stream)
        return
    try:
        tracker.end(response=response, response_json=_response_json(response))
    except GenbridgeError as e:
        await stream.emit(StreamEvent(error=e))


async def fail_stream(
    error: BaseException,
    *,
    agg: StreamAggregator | None,
    tracker: CallTracker,
    stream: EventStream,
) -> None:
    """End the call with *error* and emit it as the final event."""
    if agg is not None:
        stream.response = agg.partial_response()
        stream.usage = agg.pending_usage
    try:
        tracker.end(response=stream.response, error=error)
    except GenbridgeError as observer_error:
        logger.warning("Observer failed while recording %s: %s", error, observer_error)
    await stream.emit(StreamEvent(error=error))
