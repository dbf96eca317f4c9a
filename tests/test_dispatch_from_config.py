import asyncio

import pytest

from relaybot.config.schema import Config
from relaybot.reply.dispatch import (
    MsgContext,
    ReplyOptions,
    dispatch_reply_from_config,
    should_route_to_originating,
)
from relaybot.reply.dispatcher import ReplyDispatcher
from relaybot.reply.payload import ReplyPayload
from relaybot.reply.route_reply import RouteReplyRequest, RouteReplyResult
from relaybot.reply.stream import ReplyStream


class _FakeRouter:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.requests: list[RouteReplyRequest] = []

    async def route_reply(self, request: RouteReplyRequest) -> RouteReplyResult:
        self.requests.append(request)
        return RouteReplyResult(ok=self.ok, message_id="mid" if self.ok else None, error=None if self.ok else "boom")


def _dispatcher(sink: list[tuple[str, str | None]]) -> ReplyDispatcher:
    async def deliver(payload: ReplyPayload, kind: str) -> None:
        sink.append((kind, payload.text))

    return ReplyDispatcher(deliver)


def _resolver(*payloads: ReplyPayload, tool: ReplyPayload | None = None, block: ReplyPayload | None = None):
    async def resolve(ctx: MsgContext, options: ReplyOptions, cfg: Config):
        if tool is not None:
            options.on_tool_result(tool)
        if block is not None:
            options.on_block_reply(block)
        return list(payloads)

    return resolve


def test_should_route_to_originating():
    assert not should_route_to_originating(MsgContext(provider="slack", originating_channel="slack", originating_to="x"))
    assert not should_route_to_originating(MsgContext(provider="slack", originating_channel="telegram"))
    assert not should_route_to_originating(MsgContext(provider="slack", originating_channel="webchat", originating_to="x"))
    assert should_route_to_originating(MsgContext(provider="slack", originating_channel="telegram", originating_to="t:1"))
    assert not should_route_to_originating(
        MsgContext(provider="slack", surface="telegram", originating_channel="Telegram", originating_to="t:1")
    )


@pytest.mark.asyncio
async def test_does_not_route_when_provider_matches_originating_channel():
    router = _FakeRouter()
    delivered: list[tuple[str, str | None]] = []
    ctx = MsgContext(
        provider="slack",
        originating_channel="slack",
        originating_to="channel:C123",
    )

    result = await dispatch_reply_from_config(
        ctx, Config(), _dispatcher(delivered), _resolver(ReplyPayload(text="hi")), router=router
    )

    assert router.requests == []
    assert delivered == [("final", "hi")]
    assert result.queued_final is True
    assert result.counts["final"] == 1


@pytest.mark.asyncio
async def test_routes_when_originating_channel_differs_from_provider():
    router = _FakeRouter()
    delivered: list[tuple[str, str | None]] = []
    ctx = MsgContext(
        provider="slack",
        account_id="acc-1",
        message_thread_id=123,
        originating_channel="telegram",
        originating_to="telegram:999",
        session_key="agent:main:main",
    )

    result = await dispatch_reply_from_config(
        ctx, Config(), _dispatcher(delivered), _resolver(ReplyPayload(text="hi")), router=router
    )

    assert delivered == []
    assert len(router.requests) == 1
    request = router.requests[0]
    assert request.channel == "telegram"
    assert request.to == "telegram:999"
    assert request.account_id == "acc-1"
    assert request.thread_id == 123
    assert request.session_key == "agent:main:main"
    assert request.payload.text == "hi"
    assert result.queued_final is True
    assert result.counts["final"] == 1


@pytest.mark.asyncio
async def test_routed_tool_and_block_replies_arrive_before_final():
    router = _FakeRouter()
    delivered: list[tuple[str, str | None]] = []
    ctx = MsgContext(provider="slack", originating_channel="telegram", originating_to="42")

    await dispatch_reply_from_config(
        ctx,
        Config(),
        _dispatcher(delivered),
        _resolver(
            ReplyPayload(text="final"),
            tool=ReplyPayload(text="tool"),
            block=ReplyPayload(text="block"),
        ),
        router=router,
    )

    assert delivered == []
    assert [r.payload.text for r in router.requests] == ["tool", "block", "final"]


@pytest.mark.asyncio
async def test_failed_routing_does_not_count_as_queued():
    router = _FakeRouter(ok=False)
    delivered: list[tuple[str, str | None]] = []
    ctx = MsgContext(provider="slack", originating_channel="telegram", originating_to="42")

    result = await dispatch_reply_from_config(
        ctx, Config(), _dispatcher(delivered), _resolver(ReplyPayload(text="hi")), router=router
    )

    assert delivered == []
    assert result.queued_final is False
    assert result.counts["final"] == 0


@pytest.mark.asyncio
async def test_without_router_replies_use_dispatcher():
    delivered: list[tuple[str, str | None]] = []
    ctx = MsgContext(provider="slack", originating_channel="telegram", originating_to="42")

    await dispatch_reply_from_config(
        ctx,
        Config(),
        _dispatcher(delivered),
        _resolver(ReplyPayload(text="final"), tool=ReplyPayload(text="tool")),
    )

    assert delivered == [("tool", "tool"), ("final", "final")]


@pytest.mark.asyncio
async def test_resolver_error_becomes_error_reply():
    delivered: list[tuple[str, str | None]] = []

    async def failing(ctx: MsgContext, options: ReplyOptions, cfg: Config):
        raise RuntimeError("model unavailable")

    result = await dispatch_reply_from_config(
        MsgContext(provider="telegram", originating_channel="telegram", originating_to="1"),
        Config(),
        _dispatcher(delivered),
        failing,
    )

    assert delivered == [("final", "Sorry, I encountered an error: model unavailable")]
    assert result.queued_final is True


@pytest.mark.asyncio
async def test_resolver_returning_none_sends_nothing():
    delivered: list[tuple[str, str | None]] = []

    async def silent(ctx: MsgContext, options: ReplyOptions, cfg: Config):
        return None

    result = await dispatch_reply_from_config(
        MsgContext(provider="telegram"), Config(), _dispatcher(delivered), silent
    )

    assert delivered == []
    assert result.queued_final is False
    assert result.counts == {"tool": 0, "block": 0, "final": 0}


@pytest.mark.asyncio
async def test_streamed_replies_are_dispatched_in_order():
    delivered: list[tuple[str, str | None]] = []
    partials: list[str | None] = []

    async def streaming(ctx: MsgContext, options: ReplyOptions, cfg: Config):
        stream = ReplyStream()

        async def produce() -> None:
            stream.emit_tool_result(ReplyPayload(text="searching"))
            stream.emit_partial(ReplyPayload(text="par"))
            await asyncio.sleep(0)
            stream.emit_block(ReplyPayload(text="first block"))
            stream.emit_final(ReplyPayload(text="done"))
            stream.close()

        asyncio.create_task(produce())
        return stream

    result = await dispatch_reply_from_config(
        MsgContext(provider="telegram"),
        Config(),
        _dispatcher(delivered),
        streaming,
        reply_options=ReplyOptions(on_partial_reply=lambda p: partials.append(p.text)),
    )

    assert delivered == [("tool", "searching"), ("block", "first block"), ("final", "done")]
    assert partials == ["par"]
    assert result.counts == {"tool": 1, "block": 1, "final": 1}


@pytest.mark.asyncio
async def test_block_streaming_on_coalesces_blocks():
    delivered: list[tuple[str, str | None]] = []
    cfg = Config.model_validate({
        "agents": {
            "defaults": {
                "blockStreamingDefault": "on",
                "blockStreamingCoalesce": {"minChars": 1000, "maxChars": 2000, "idleMs": 10000},
            }
        }
    })

    async def resolve(ctx: MsgContext, options: ReplyOptions, c: Config):
        options.on_block_reply(ReplyPayload(text="one"))
        options.on_block_reply(ReplyPayload(text="two"))
        return ReplyPayload(text="final")

    await dispatch_reply_from_config(MsgContext(provider="telegram"), cfg, _dispatcher(delivered), resolve)

    assert delivered == [("block", "one\n\ntwo"), ("final", "final")]
