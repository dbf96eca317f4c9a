"""Agent loop: route inbound messages to agents and deliver their replies."""

from __future__ import annotations

import asyncio

from loguru import logger

from relaybot.agent.scope import AgentScope, resolve_agent_dir, resolve_agent_entry, resolve_agent_workspace_dir
from relaybot.bus.events import InboundMessage, OutboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.config.schema import Config
from relaybot.reply.dispatch import DispatchResult, MsgContext, ReplyResolver, dispatch_reply_from_config
from relaybot.reply.dispatcher import ReplyDispatcher, ReplyDispatchKind
from relaybot.reply.payload import ReplyPayload
from relaybot.reply.queue import FollowupQueue, FollowupRun, FollowupRunSettings, resolve_queue_settings
from relaybot.reply.route_reply import ReplyRouter
from relaybot.routing.resolve_route import Route, RoutePeer, resolve_agent_route


class AgentLoop:
    """
    The gateway's inbound processing engine.

    It:
    1. Receives messages from the bus
    2. Resolves the owning agent and session key from the bindings
    3. Runs the reply resolver, or queues a followup while the session is busy
    4. Publishes replies back to the bus (or routes them to the originating provider)
    """

    def __init__(
        self,
        bus: MessageBus,
        config: Config,
        reply_resolver: ReplyResolver,
        router: ReplyRouter | None = None,
        followups: FollowupQueue | None = None,
        scope: AgentScope | None = None,
    ):
        self.bus = bus
        self.config = config
        self.reply_resolver = reply_resolver
        self.router = router
        self.followups = followups or FollowupQueue()
        self.scope = scope or AgentScope()
        self._running = False
        self._closed = False
        self._active: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    async def run(self) -> None:
        """Run the agent loop, processing messages from the bus."""
        self._running = True
        logger.info("Agent loop started")

        try:
            while self._running:
                try:
                    msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                task = asyncio.create_task(self.handle_inbound(msg))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            await self._shutdown()

    def stop(self) -> None:
        self._running = False
        self._closed = True
        logger.info("Agent loop stopping")

    def resolve_route(self, msg: InboundMessage) -> Route:
        return resolve_agent_route(
            self.config,
            msg.channel,
            account_id=msg.account_id,
            peer=RoutePeer(kind=msg.peer_kind, id=msg.peer_id or msg.chat_id),
            guild_id=msg.guild_id,
            team_id=msg.team_id,
            scope=self.scope,
        )

    def is_busy(self, session_key: str) -> bool:
        return (
            session_key in self._active
            or self.followups.is_draining(session_key)
            or self.followups.get_followup_queue_depth(session_key) > 0
        )

    async def handle_inbound(self, msg: InboundMessage) -> DispatchResult | None:
        """Process one inbound message. Returns None when it was queued as a followup."""
        route = self.resolve_route(msg)
        key = route.session_key
        ctx = MsgContext(
            body=msg.content,
            provider=msg.channel,
            surface=msg.channel,
            originating_channel=msg.channel,
            originating_to=msg.chat_id,
            account_id=route.account_id,
            message_thread_id=msg.thread_id,
            session_key=key,
            sender_id=msg.sender_id,
            message_id=msg.message_id,
            metadata=dict(msg.metadata or {}),
        )
        settings = resolve_queue_settings(self.config, msg.channel)

        if settings.mode == "interrupt" and key in self._active:
            logger.info(f"Interrupting active run for {key}")
            self.followups.clear_followup_queue(key)
            self._active[key].cancel()
        elif self.is_busy(key):
            run = FollowupRun(
                prompt=msg.content,
                run=self._followup_settings(route, msg.channel),
                message_id=msg.message_id,
                originating_channel=msg.channel,
                originating_to=msg.chat_id,
                originating_account_id=route.account_id,
                originating_thread_id=msg.thread_id,
            )
            if self.followups.enqueue_followup_run(key, run, settings):
                logger.debug(f"Session {key} busy; queued followup ({settings.mode})")
                # An active run schedules the drain itself when it finishes
                if key not in self._active and not self._closed:
                    self.followups.schedule_followup_drain(key, self._run_followup)
            return None

        logger.info(f"Processing message from {msg.channel}:{msg.sender_id} as {key} ({route.matched_by})")
        return await self._run_exclusive(key, ctx)

    async def _run_exclusive(self, key: str, ctx: MsgContext) -> DispatchResult | None:
        task = asyncio.ensure_future(self.process(ctx))
        self._active[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info(f"Run for {key} was interrupted")
            return None
        finally:
            if self._active.get(key) is task:
                self._active.pop(key, None)
                if not self._closed:
                    self.followups.schedule_followup_drain(key, self._run_followup)

    async def process(self, ctx: MsgContext) -> DispatchResult:
        """Run the reply resolver for ctx and deliver the replies."""
        dispatcher = ReplyDispatcher(
            deliver=lambda payload, kind: self._publish(ctx, payload, kind),
            response_prefix=self.config.messages.response_prefix,
        )
        return await dispatch_reply_from_config(
            ctx,
            self.config,
            dispatcher,
            self.reply_resolver,
            router=self.router,
        )

    async def _run_followup(self, run: FollowupRun) -> None:
        ctx = MsgContext(
            body=run.prompt,
            provider=run.run.provider,
            surface=run.run.provider,
            originating_channel=run.originating_channel,
            originating_to=run.originating_to,
            account_id=run.originating_account_id,
            message_thread_id=run.originating_thread_id,
            session_key=run.run.session_key,
            message_id=run.message_id,
        )
        key = run.run.session_key or ""
        task = asyncio.ensure_future(self.process(ctx))
        self._active[key] = task
        try:
            await task
        finally:
            if self._active.get(key) is task:
                self._active.pop(key, None)

    async def _publish(self, ctx: MsgContext, payload: ReplyPayload, kind: ReplyDispatchKind) -> None:
        await self.bus.publish_outbound(OutboundMessage(
            channel=ctx.provider or "",
            chat_id=ctx.originating_to or "",
            content=payload.text or "",
            reply_to=payload.reply_to_id,
            media=payload.all_media_urls,
            account_id=ctx.account_id,
            thread_id=ctx.message_thread_id,
            metadata={"kind": kind, "is_error": payload.is_error, "session_key": ctx.session_key},
        ))

    def _followup_settings(self, route: Route, provider: str) -> FollowupRunSettings:
        cfg = self.config
        entry = resolve_agent_entry(cfg, route.agent_id)
        agent_dir = resolve_agent_dir(cfg, route.agent_id)
        session_id = route.session_key.replace(":", "_")
        return FollowupRunSettings(
            agent_id=route.agent_id,
            agent_dir=str(agent_dir),
            session_id=session_id,
            session_file=str(agent_dir / "sessions" / f"{session_id}.jsonl"),
            workspace_dir=str(resolve_agent_workspace_dir(cfg, route.agent_id, self.scope)),
            config=cfg,
            provider=provider,
            model=(entry.model if entry and entry.model else cfg.agents.defaults.model) or "",
            timeout_ms=cfg.agents.defaults.timeout_seconds * 1000,
            block_reply_break=cfg.agents.defaults.block_streaming_break,
            session_key=route.session_key,
        )

    async def _shutdown(self) -> None:
        """Cancel and await in-flight runs, then drop queued followups."""
        self._closed = True
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.followups.close()
        logger.info("Agent loop stopped")
