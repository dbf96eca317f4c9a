"""Channel manager for provider adapters."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from relaybot.bus.events import OutboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.config.schema import Config
from relaybot.providers.base import ProviderAdapter, ProviderRegistry


class ChannelManager:
    """
    Owns the provider registry and coordinates channel lifecycles.

    Responsibilities:
    - Register adapters for enabled providers
    - Start/stop adapters
    - Deliver outbound bus messages, serially per provider
    """

    def __init__(self, config: Config, bus: MessageBus, registry: ProviderRegistry | None = None):
        self.config = config
        self.bus = bus
        self.registry = registry or ProviderRegistry()
        self._dispatch_task: asyncio.Task | None = None
        self._outbound_queues: dict[str, asyncio.Queue[OutboundMessage]] = {}
        self._outbound_workers: dict[str, asyncio.Task[None]] = {}

        self._init_channels()

    def _init_channels(self) -> None:
        """Register adapters for providers enabled in config."""
        if self.config.channels.telegram.enabled and "telegram" not in self.registry:
            try:
                from relaybot.channels.telegram import TelegramAdapter
                self.registry.register(TelegramAdapter(self.config.channels.telegram, self.bus))
                logger.info("Telegram channel enabled")
            except ImportError as e:
                logger.warning(f"Telegram channel not available: {e}")

    async def _start_channel(self, name: str, adapter: ProviderAdapter) -> None:
        """Start an adapter and log any exceptions."""
        try:
            await adapter.start()
        except Exception as e:
            logger.error(f"Failed to start channel {name}: {e}")

    async def start_all(self) -> None:
        """Start all adapters and the outbound dispatcher."""
        if not len(self.registry):
            logger.warning("No channels enabled")
            return

        self._dispatch_task = asyncio.create_task(self._dispatch_outbound())

        tasks = []
        for name in self.registry.ids():
            logger.info(f"Starting {name} channel...")
            tasks.append(asyncio.create_task(self._start_channel(name, self.registry.require(name))))

        # Adapters with an inbound side run until stopped
        await asyncio.gather(*tasks, return_exceptions=True)

    async def stop_all(self) -> None:
        """Stop all adapters and the dispatcher."""
        logger.info("Stopping all channels...")

        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
        await self._stop_outbound_workers()

        for name in self.registry.ids():
            try:
                await self.registry.require(name).stop()
                logger.info(f"Stopped {name} channel")
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

    async def _dispatch_outbound(self) -> None:
        """Fan outbound messages out to per-provider workers."""
        logger.info("Outbound dispatcher started")

        while True:
            try:
                msg = await asyncio.wait_for(self.bus.consume_outbound(), timeout=1.0)
                if msg.channel not in self.registry:
                    logger.warning(f"Unknown channel: {msg.channel}")
                    continue
                queue = self._outbound_queues.setdefault(msg.channel, asyncio.Queue())
                await queue.put(msg)
                self._ensure_outbound_worker(msg.channel)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def _ensure_outbound_worker(self, channel_name: str) -> None:
        worker = self._outbound_workers.get(channel_name)
        if worker is None or worker.done():
            queue = self._outbound_queues[channel_name]
            self._outbound_workers[channel_name] = asyncio.create_task(
                self._outbound_channel_worker(channel_name, queue)
            )

    async def send(self, msg: OutboundMessage) -> None:
        """Deliver one outbound message through its provider adapter."""
        adapter = self.registry.require(msg.channel)
        media = list(msg.media or [])
        await adapter.send_message(
            msg.chat_id,
            msg.content,
            media_url=media[0] if media else None,
            account_id=msg.account_id,
            reply_to_id=msg.reply_to,
            thread_id=msg.thread_id,
        )
        for url in media[1:]:
            await adapter.send_message(
                msg.chat_id,
                "",
                media_url=url,
                account_id=msg.account_id,
                thread_id=msg.thread_id,
            )

    async def _outbound_channel_worker(
        self,
        channel_name: str,
        queue: asyncio.Queue[OutboundMessage],
    ) -> None:
        """Send outbound messages serially for one provider."""
        try:
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    if queue.empty():
                        break
                    continue
                try:
                    await self.send(msg)
                except Exception as e:
                    logger.error(f"Error sending to {channel_name}: {e}")
                if queue.empty():
                    break
        finally:
            if self._outbound_workers.get(channel_name) is asyncio.current_task():
                self._outbound_workers.pop(channel_name, None)
            if queue.empty():
                self._outbound_queues.pop(channel_name, None)
            else:
                self._outbound_workers[channel_name] = asyncio.create_task(
                    self._outbound_channel_worker(channel_name, queue)
                )

    async def _stop_outbound_workers(self) -> None:
        workers = list(self._outbound_workers.values())
        self._outbound_workers.clear()
        self._outbound_queues.clear()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def get_status(self) -> dict[str, Any]:
        """Get status of all channels."""
        return {
            adapter.id: {"enabled": True, "running": adapter.is_running}
            for adapter in self.registry.adapters()
        }

    @property
    def enabled_channels(self) -> list[str]:
        return self.registry.ids()
