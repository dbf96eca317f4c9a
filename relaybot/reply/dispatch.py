"""Run the reply resolver for one inbound message and deliver what it produces."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from loguru import logger

from relaybot.config.schema import Config
from relaybot.reply.coalescer import BlockReplyCoalescer, resolve_block_streaming_coalescing
from relaybot.reply.dispatcher import ReplyDispatcher
from relaybot.reply.payload import ReplyPayload
from relaybot.reply.route_reply import ReplyRouter, RouteReplyRequest, is_routable_channel
from relaybot.reply.stream import ReplyStream

PayloadHook = Callable[[ReplyPayload], Any]


@dataclass
class MsgContext:
    """Inbound message context handed to the reply resolver."""

    body: str = ""
    provider: str | None = None
    surface: str | None = None
    originating_channel: str | None = None
    originating_to: str | None = None
    account_id: str | None = None
    message_thread_id: str | int | None = None
    session_key: str | None = None
    sender_id: str | None = None
    message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReplyOptions:
    on_tool_result: PayloadHook | None = None
    on_block_reply: PayloadHook | None = None
    on_partial_reply: PayloadHook | None = None


@dataclass
class DispatchResult:
    queued_final: bool
    counts: dict[str, int]


ResolverResult = Union[ReplyPayload, list[ReplyPayload], ReplyStream, None]
ReplyResolver = Callable[[MsgContext, ReplyOptions, Config], Awaitable[ResolverResult]]


def should_route_to_originating(ctx: MsgContext) -> bool:
    """True when replies belong on the channel the conversation started on, not the current surface."""
    current = (ctx.surface or ctx.provider or "").lower()
    return bool(
        is_routable_channel(ctx.originating_channel)
        and ctx.originating_to
        and (ctx.originating_channel or "").lower() != current
    )


async def _call_hook(hook: PayloadHook | None, payload: ReplyPayload) -> None:
    if hook is None:
        return
    result = hook(payload)
    if inspect.isawaitable(result):
        await result


async def consume_reply_stream(
    stream: ReplyStream,
    options: ReplyOptions,
) -> list[ReplyPayload]:
    """Feed streamed events to the option hooks and collect the final payloads."""
    finals: list[ReplyPayload] = []
    async for event in stream:
        if event.kind == "tool_result":
            await _call_hook(options.on_tool_result, event.payload)
        elif event.kind == "block":
            await _call_hook(options.on_block_reply, event.payload)
        elif event.kind == "partial":
            await _call_hook(options.on_partial_reply, event.payload)
        else:
            finals.append(event.payload)
    return finals


class _RoutedSends:
    """Routed tool/block sends, delivered in order without blocking the resolver."""

    def __init__(self, send: Callable[[ReplyPayload], Awaitable[Any]]):
        self._send = send
        self._tail: asyncio.Task[None] | None = None

    def submit(self, payload: ReplyPayload) -> None:
        self._tail = asyncio.ensure_future(self._after(self._tail, payload))

    async def _after(self, previous: asyncio.Task[None] | None, payload: ReplyPayload) -> None:
        if previous is not None:
            await previous
        await self._send(payload)

    async def wait(self) -> None:
        if self._tail is not None:
            await self._tail


async def dispatch_reply_from_config(
    ctx: MsgContext,
    cfg: Config,
    dispatcher: ReplyDispatcher,
    reply_resolver: ReplyResolver,
    router: ReplyRouter | None = None,
    reply_options: ReplyOptions | None = None,
) -> DispatchResult:
    """
    Resolve a reply and deliver it on exactly one path.

    When the conversation originated on a different routable channel, every
    reply (tool results, blocks and finals) goes through ``router`` to the
    originating destination. Otherwise everything goes through ``dispatcher``.
    """
    should_route = router is not None and should_route_to_originating(ctx)
    channel = ctx.originating_channel or ""
    to = ctx.originating_to or ""

    async def route(payload: ReplyPayload) -> bool:
        result = await router.route_reply(RouteReplyRequest(
            payload=payload,
            channel=channel,
            to=to,
            session_key=ctx.session_key,
            account_id=ctx.account_id,
            thread_id=ctx.message_thread_id,
            cfg=cfg,
        ))
        if not result.ok:
            logger.warning(f"Routing reply to {channel}:{to} failed: {result.error or 'unknown error'}")
        return result.ok

    routed = _RoutedSends(route)

    def deliver_tool(payload: ReplyPayload) -> None:
        if should_route:
            routed.submit(payload)
        else:
            dispatcher.send_tool_result(payload)

    def deliver_block(payload: ReplyPayload) -> None:
        if should_route:
            routed.submit(payload)
        else:
            dispatcher.send_block_reply(payload)

    coalescer: BlockReplyCoalescer | None = None
    if cfg.agents.defaults.block_streaming_default == "on":
        target = channel if should_route else (ctx.surface or ctx.provider)
        coalescer = BlockReplyCoalescer(
            resolve_block_streaming_coalescing(cfg, target),
            should_abort=lambda: False,
            on_flush=deliver_block,
        )

    user_options = reply_options or ReplyOptions()
    options = ReplyOptions(
        on_tool_result=deliver_tool,
        on_block_reply=coalescer.enqueue if coalescer else deliver_block,
        on_partial_reply=user_options.on_partial_reply,
    )

    try:
        result = await reply_resolver(ctx, options, cfg)
        if isinstance(result, ReplyStream):
            replies = await consume_reply_stream(result, options)
        elif result is None:
            replies = []
        else:
            replies = result if isinstance(result, list) else [result]
    except Exception as e:
        logger.error(f"Reply resolver failed for {ctx.session_key}: {e}")
        replies = [ReplyPayload(text=f"Sorry, I encountered an error: {e}", is_error=True)]

    if coalescer is not None:
        await coalescer.flush(force=True)
        coalescer.stop()

    queued_final = False
    routed_final_count = 0
    if should_route:
        await routed.wait()
        for reply in replies:
            if await route(reply):
                queued_final = True
                routed_final_count += 1
    else:
        for reply in replies:
            queued_final = dispatcher.send_final_reply(reply) or queued_final

    await dispatcher.wait_for_idle()
    counts = dispatcher.get_queued_counts()
    counts["final"] += routed_final_count
    return DispatchResult(queued_final=queued_final, counts=counts)
