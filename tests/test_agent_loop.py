import asyncio

import pytest

from relaybot.agent.loop import AgentLoop
from relaybot.bus.events import InboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.config.schema import Config
from relaybot.reply.dispatch import MsgContext, ReplyOptions
from relaybot.reply.payload import ReplyPayload
from relaybot.reply.queue import COLLECT_TITLE


def _msg(content: str, message_id: str, chat_id: str = "100", **kwargs) -> InboundMessage:
    return InboundMessage(
        channel="telegram",
        sender_id="u1",
        chat_id=chat_id,
        content=content,
        message_id=message_id,
        **kwargs,
    )


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _drain_outbound(bus: MessageBus) -> list:
    items = []
    while not bus.outbound.empty():
        items.append(bus.outbound.get_nowait())
    return items


@pytest.mark.asyncio
async def test_replies_are_published_to_originating_chat():
    bus = MessageBus()

    async def resolver(ctx: MsgContext, options: ReplyOptions, cfg: Config):
        options.on_tool_result(ReplyPayload(text="looked it up"))
        return ReplyPayload(text=f"you said {ctx.body}", reply_to_id=ctx.message_id)

    loop = AgentLoop(bus, Config(), resolver)
    result = await loop.handle_inbound(_msg("hi", "7", thread_id=3))

    assert result.queued_final is True
    assert result.counts == {"tool": 1, "block": 0, "final": 1}
    out = _drain_outbound(bus)
    assert [(m.channel, m.chat_id, m.content, m.metadata["kind"]) for m in out] == [
        ("telegram", "100", "looked it up", "tool"),
        ("telegram", "100", "you said hi", "final"),
    ]
    assert out[1].reply_to == "7"
    assert out[1].thread_id == 3
    assert out[1].metadata["session_key"] == "agent:main:main"


@pytest.mark.asyncio
async def test_messages_for_busy_session_are_collected_into_one_followup():
    bus = MessageBus()
    cfg = Config.model_validate({"messages": {"queue": {"mode": "collect", "debounceMs": 10}}})
    release = asyncio.Event()
    bodies: list[str] = []

    async def resolver(ctx: MsgContext, options: ReplyOptions, c: Config):
        bodies.append(ctx.body)
        if len(bodies) == 1:
            await release.wait()
        return ReplyPayload(text=f"reply {len(bodies)}")

    loop = AgentLoop(bus, cfg, resolver)
    first = asyncio.create_task(loop.handle_inbound(_msg("one", "1")))
    await _wait_for(lambda: bodies)

    assert await loop.handle_inbound(_msg("two", "2")) is None
    assert await loop.handle_inbound(_msg("three", "3")) is None
    assert loop.is_busy("agent:main:main")
    assert loop.followups.get_followup_queue_depth("agent:main:main") == 2
    await asyncio.sleep(0.05)
    assert len(bodies) == 1

    release.set()
    await first
    await _wait_for(lambda: len(bodies) == 2)
    await loop.followups.wait_until_idle("agent:main:main")

    assert bodies[1].startswith(COLLECT_TITLE)
    assert "Queued #1\ntwo" in bodies[1]
    assert "Queued #2\nthree" in bodies[1]
    assert [m.content for m in _drain_outbound(bus)] == ["reply 1", "reply 2"]
    assert not loop.is_busy("agent:main:main")


@pytest.mark.asyncio
async def test_interrupt_mode_cancels_active_run():
    bus = MessageBus()
    cfg = Config.model_validate({"messages": {"queue": {"byProvider": {"telegram": "interrupt"}}}})
    never = asyncio.Event()
    bodies: list[str] = []

    async def resolver(ctx: MsgContext, options: ReplyOptions, c: Config):
        bodies.append(ctx.body)
        if ctx.body == "slow":
            await never.wait()
        return ReplyPayload(text=f"done {ctx.body}")

    loop = AgentLoop(bus, cfg, resolver)
    first = asyncio.create_task(loop.handle_inbound(_msg("slow", "1")))
    await _wait_for(lambda: bodies)

    second = await loop.handle_inbound(_msg("fast", "2"))

    assert await first is None
    assert second.queued_final is True
    assert [m.content for m in _drain_outbound(bus)] == ["done fast"]


@pytest.mark.asyncio
async def test_group_peers_get_their_own_session():
    cfg = Config.model_validate({
        "agents": {"list": [{"id": "main", "default": True}, {"id": "ops"}]},
        "bindings": [{"agentId": "ops", "match": {"provider": "telegram", "peer": {"kind": "group", "id": "-5"}}}],
    })

    async def resolver(ctx: MsgContext, options: ReplyOptions, c: Config):
        return None

    loop = AgentLoop(MessageBus(), cfg, resolver)
    route = loop.resolve_route(_msg("hi", "1", chat_id="-5", peer_kind="group"))

    assert route.agent_id == "ops"
    assert route.session_key == "agent:ops:telegram:group:-5"
    assert route.matched_by == "binding.peer"

    settings = loop._followup_settings(route, "telegram")
    assert settings.session_id == "agent_ops_telegram_group_-5"
    assert settings.session_file.endswith("sessions/agent_ops_telegram_group_-5.jsonl")
    assert settings.timeout_ms == 600_000


@pytest.mark.asyncio
async def test_run_consumes_inbound_from_bus():
    bus = MessageBus()

    async def resolver(ctx: MsgContext, options: ReplyOptions, c: Config):
        return ReplyPayload(text="pong")

    loop = AgentLoop(bus, Config(), resolver)
    runner = asyncio.create_task(loop.run())
    await bus.publish_inbound(_msg("ping", "1"))

    out = await asyncio.wait_for(bus.consume_outbound(), timeout=2.0)
    loop.stop()
    await asyncio.wait_for(runner, timeout=3.0)

    assert out.content == "pong"


@pytest.mark.asyncio
async def test_stopping_the_loop_drops_queued_followups():
    bus = MessageBus()
    cfg = Config.model_validate({"messages": {"queue": {"mode": "followup", "debounceMs": 10}}})
    never = asyncio.Event()
    bodies: list[str] = []

    async def resolver(ctx: MsgContext, options: ReplyOptions, c: Config):
        bodies.append(ctx.body)
        if ctx.body == "one":
            await never.wait()
        return ReplyPayload(text=f"done {ctx.body}")

    loop = AgentLoop(bus, cfg, resolver)
    runner = asyncio.create_task(loop.run())
    await bus.publish_inbound(_msg("one", "1"))
    await _wait_for(lambda: bodies == ["one"])
    await bus.publish_inbound(_msg("two", "2"))
    await _wait_for(lambda: loop.followups.get_followup_queue_depth("agent:main:main") == 1)

    loop.stop()
    await asyncio.wait_for(runner, timeout=3.0)
    await asyncio.sleep(0.05)

    assert bodies == ["one"]
    assert loop.followups.get_followup_queue_depth("agent:main:main") == 0
    assert not loop.is_busy("agent:main:main")


@pytest.mark.asyncio
async def test_run_finishing_after_stop_does_not_start_followups():
    bus = MessageBus()
    cfg = Config.model_validate({"messages": {"queue": {"mode": "followup", "debounceMs": 0}}})
    release = asyncio.Event()
    bodies: list[str] = []

    async def resolver(ctx: MsgContext, options: ReplyOptions, c: Config):
        bodies.append(ctx.body)
        if ctx.body == "one":
            await release.wait()
        return ReplyPayload(text=f"done {ctx.body}")

    loop = AgentLoop(bus, cfg, resolver)
    first = asyncio.create_task(loop.handle_inbound(_msg("one", "1")))
    await _wait_for(lambda: bodies)
    assert await loop.handle_inbound(_msg("two", "2")) is None

    loop.stop()
    release.set()
    await first
    await asyncio.sleep(0.05)

    assert bodies == ["one"]
    assert not loop.followups.is_draining("agent:main:main")
