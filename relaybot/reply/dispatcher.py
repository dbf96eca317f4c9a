"""Ordered outbound delivery of tool results, blocks and final replies."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Literal

from loguru import logger

from relaybot.reply.payload import ReplyPayload, normalize_reply_payload

ReplyDispatchKind = Literal["tool", "block", "final"]

Deliver = Callable[[ReplyPayload, ReplyDispatchKind], Awaitable[Any]]
OnDispatchError = Callable[[Exception, ReplyDispatchKind], Any]


class ReplyDispatcher:
    """
    Queue replies for one conversation turn and deliver them serially.

    The ``send_*`` methods never suspend and never raise: they return True
    when the payload was queued and False when it normalized to nothing.
    Delivery failures are logged and passed to ``on_error`` so one bad send
    does not abort the rest of the turn.
    """

    def __init__(
        self,
        deliver: Deliver,
        response_prefix: str | None = None,
        on_error: OnDispatchError | None = None,
        on_idle: Callable[[], Any] | None = None,
    ):
        self._deliver = deliver
        self._response_prefix = response_prefix
        self._on_error = on_error
        self._on_idle = on_idle
        self._queue: asyncio.Queue[tuple[ReplyDispatchKind, ReplyPayload]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._queued_counts: dict[str, int] = {"tool": 0, "block": 0, "final": 0}

    def send_tool_result(self, payload: ReplyPayload) -> bool:
        return self._enqueue("tool", payload)

    def send_block_reply(self, payload: ReplyPayload) -> bool:
        return self._enqueue("block", payload)

    def send_final_reply(self, payload: ReplyPayload) -> bool:
        return self._enqueue("final", payload)

    async def wait_for_idle(self) -> None:
        """Wait until every queued payload has been delivered (or failed)."""
        await self._idle.wait()

    def get_queued_counts(self) -> dict[str, int]:
        return dict(self._queued_counts)

    def _enqueue(self, kind: ReplyDispatchKind, payload: ReplyPayload) -> bool:
        normalized = normalize_reply_payload(payload, self._response_prefix)
        if normalized is None:
            return False
        self._queued_counts[kind] += 1
        self._pending += 1
        self._idle.clear()
        self._queue.put_nowait((kind, normalized))
        self._ensure_worker()
        return True

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while not self._queue.empty():
            kind, payload = self._queue.get_nowait()
            try:
                await self._deliver(payload, kind)
            except Exception as e:
                logger.error(f"Failed to deliver {kind} reply: {e}")
                if self._on_error:
                    try:
                        self._on_error(e, kind)
                    except Exception as hook_err:
                        logger.error(f"on_error hook failed: {hook_err}")
            finally:
                self._pending -= 1
                if self._pending == 0:
                    self._idle.set()
                    if self._on_idle:
                        try:
                            self._on_idle()
                        except Exception as hook_err:
                            logger.error(f"on_idle hook failed: {hook_err}")
