"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: transports and observers scripted
here stand in for the network and for tracing backends in every suite.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import json
from typing import TYPE_CHECKING, Any

from genbridge.frames import _LINE_BREAK

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from genbridge.lifecycle import CallContext, CallInfo
    from genbridge.models import Usage
    from genbridge.transport import WireRequest


@dataclass
class FakeResponse:
    """Scripted provider reply.

    ``lines`` streams line by line; otherwise ``body`` is split into lines.
    ``fail_after`` raises once the lines are exhausted, and ``gate`` blocks
    after ``gate_after`` lines until released.
    """

    status_code: int = 200
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    lines: list[str] | None = None
    fail_after: BaseException | None = None
    gate: asyncio.Event | None = None
    gate_after: int = 0
    closed: bool = False
    #: "lines closed" and "released", in the order they happened.
    log: list[str] = field(default_factory=list)

    async def aread(self) -> bytes:
        if self.lines is not None and not self.body:
            return "\n".join(self.lines).encode("utf-8")
        return self.body

    async def aiter_lines(self) -> AsyncIterator[str]:
        lines = self.lines
        if lines is None:
            lines = _LINE_BREAK.split(self.body.decode("utf-8"))
        try:
            for i, line in enumerate(lines):
                if self.gate is not None and i == self.gate_after:
                    await self.gate.wait()
                yield line
            if self.fail_after is not None:
                raise self.fail_after
        finally:
            self.log.append("lines closed")


def json_response(payload: Any, status_code: int = 200, **headers: str) -> FakeResponse:
    return FakeResponse(
        status_code=status_code,
        body=json.dumps(payload).encode("utf-8"),
        headers={"content-type": "application/json", **headers},
    )


def sse_response(*events: Any, done: bool = True) -> FakeResponse:
    """SSE reply whose events are dicts (data only) or (event, dict) pairs."""
    lines: list[str] = []
    for event in events:
        if isinstance(event, tuple):
            name, data = event
            lines.append(f"event: {name}")
        else:
            data = event
        lines.append(f"data: {json.dumps(data)}")
        lines.append("")
    if done:
        lines += ["data: [DONE]", ""]
    return FakeResponse(headers={"content-type": "text/event-stream"}, lines=lines)


def ndjson_response(*chunks: Any) -> FakeResponse:
    return FakeResponse(
        headers={"content-type": "application/x-ndjson"},
        lines=[json.dumps(c) for c in chunks],
    )


@dataclass
class ScriptedTransport:
    """Transport that replays a scripted sequence of responses/exceptions."""

    script: list[FakeResponse | BaseException] = field(default_factory=list)
    requests: list[WireRequest] = field(default_factory=list)
    closed: bool = False

    @asynccontextmanager
    async def send(self, request: WireRequest) -> AsyncIterator[FakeResponse]:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"unexpected request to {request.url}")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        try:
            yield item
        finally:
            item.closed = True
            item.log.append("released")

    async def aclose(self) -> None:
        self.closed = True

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.body) for r in self.requests]


@dataclass
class RecordingObserver:
    """Observer that records every hook; optionally raises from one of them."""

    starts: list[CallInfo] = field(default_factory=list)
    ends: list[CallInfo] = field(default_factory=list)
    deltas: list[bytes] = field(default_factory=list)
    fail_on: str | None = None

    def on_call_start(self, ctx: CallContext, info: CallInfo) -> CallContext:
        self.starts.append(info)
        if self.fail_on == "start":
            raise RuntimeError("observer start boom")
        return ctx.with_value("trace_id", "t-1")

    def on_call_end(self, ctx: CallContext, info: CallInfo) -> None:
        assert ctx.get("trace_id") == "t-1"
        self.ends.append(info)
        if self.fail_on == "end":
            raise RuntimeError("observer end boom")

    def on_stream_delta(self, ctx: CallContext, data: bytes) -> None:
        self.deltas.append(data)
        if self.fail_on == "delta":
            raise RuntimeError("observer delta boom")


@dataclass
class RecordingUsageListener:
    calls: list[tuple[str, Usage]] = field(default_factory=list)
    fail: bool = False

    def on_usage(self, model: str, usage: Usage) -> None:
        self.calls.append((model, usage))
        if self.fail:
            raise RuntimeError("usage listener boom")


async def collect(events: Any) -> list[Any]:
    """Drain an EventStream into a list."""
    out = []
    async with events:
        async for event in events:
            out.append(event)
    return out
