"""Typed async stream of reply events emitted by an agent run."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Literal

from relaybot.reply.payload import ReplyPayload

ReplyEventKind = Literal["tool_result", "block", "partial", "final"]


@dataclass(frozen=True)
class ReplyEvent:
    kind: ReplyEventKind
    payload: ReplyPayload


_CLOSED = object()


class ReplyStream:
    """
    Single-consumer channel of ReplyEvents.

    Producers call the ``emit_*`` helpers (synchronous, never suspend) and
    ``close()`` when the run ends; the consumer iterates with ``async for``.
    ``close(error)`` ends the iteration by raising ``error`` in the consumer.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._error: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: ReplyEvent) -> None:
        if self._closed:
            raise RuntimeError("reply stream is closed")
        self._queue.put_nowait(event)

    def emit_tool_result(self, payload: ReplyPayload) -> None:
        self.emit(ReplyEvent("tool_result", payload))

    def emit_block(self, payload: ReplyPayload) -> None:
        self.emit(ReplyEvent("block", payload))

    def emit_partial(self, payload: ReplyPayload) -> None:
        self.emit(ReplyEvent("partial", payload))

    def emit_final(self, payload: ReplyPayload) -> None:
        self.emit(ReplyEvent("final", payload))

    def close(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ReplyEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ReplyEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                if self._error is not None:
                    raise self._error
                return
            yield item  # type: ignore[misc]
