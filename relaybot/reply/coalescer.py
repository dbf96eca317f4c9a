"""Coalesce streamed block replies into provider-sized chunks."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from loguru import logger

from relaybot.config.schema import Config
from relaybot.reply.payload import ReplyPayload

DEFAULT_BLOCK_STREAM_MIN = 800
DEFAULT_BLOCK_STREAM_MAX = 1200
DEFAULT_BLOCK_STREAM_COALESCE_IDLE_MS = 1000
DEFAULT_TEXT_CHUNK_LIMIT = 4000

# Provider hard limits on a single message; config may lower them.
PROVIDER_TEXT_CHUNK_LIMITS = {
    "discord": 2000,
}

BLOCK_CHUNK_PROVIDERS = frozenset({
    "whatsapp",
    "telegram",
    "discord",
    "slack",
    "signal",
    "imessage",
    "msteams",
    "webchat",
})

BreakPreference = Literal["paragraph", "newline", "sentence"]

_JOINERS: dict[str, str] = {
    "paragraph": "\n\n",
    "newline": "\n",
    "sentence": " ",
}


@dataclass(frozen=True)
class BlockStreamingChunking:
    min_chars: int
    max_chars: int
    break_preference: BreakPreference = "paragraph"


@dataclass(frozen=True)
class CoalescingConfig:
    min_chars: int
    max_chars: int
    idle_ms: int
    joiner: str = ""


def _normalize_chunk_provider(provider: str | None) -> str | None:
    cleaned = (provider or "").strip().lower()
    return cleaned if cleaned in BLOCK_CHUNK_PROVIDERS else None


def resolve_text_chunk_limit(cfg: Config | None, provider: str | None) -> int:
    provider_key = _normalize_chunk_provider(provider)
    fallback = PROVIDER_TEXT_CHUNK_LIMITS.get(provider_key or "", DEFAULT_TEXT_CHUNK_LIMIT)
    channel_cfg = cfg.channels.get(provider_key) if cfg and provider_key else None
    configured = channel_cfg.text_chunk_limit if channel_cfg else None
    if configured and configured > 0:
        return min(configured, fallback)
    return fallback


def resolve_block_streaming_chunking(cfg: Config | None, provider: str | None = None) -> BlockStreamingChunking:
    """Min/max block sizes for a provider, never larger than its text chunk limit."""
    text_limit = resolve_text_chunk_limit(cfg, provider)
    chunk_cfg = cfg.agents.defaults.block_streaming_chunk if cfg else None
    max_requested = max(1, int(chunk_cfg.max_chars if chunk_cfg and chunk_cfg.max_chars else DEFAULT_BLOCK_STREAM_MAX))
    max_chars = max(1, min(max_requested, text_limit))
    min_requested = max(1, int(chunk_cfg.min_chars if chunk_cfg and chunk_cfg.min_chars else DEFAULT_BLOCK_STREAM_MIN))
    min_chars = min(min_requested, max_chars)
    preference = chunk_cfg.break_preference if chunk_cfg and chunk_cfg.break_preference else "paragraph"
    return BlockStreamingChunking(min_chars=min_chars, max_chars=max_chars, break_preference=preference)


def resolve_block_streaming_coalescing(
    cfg: Config | None,
    provider: str | None,
    chunking: BlockStreamingChunking | None = None,
) -> CoalescingConfig:
    """Coalescer thresholds: per-provider settings override agent defaults."""
    chunking = chunking or resolve_block_streaming_chunking(cfg, provider)
    provider_key = _normalize_chunk_provider(provider)
    provider_cfg = None
    if cfg and provider_key:
        channel_cfg = cfg.channels.get(provider_key)
        provider_cfg = channel_cfg.block_streaming_coalesce if channel_cfg else None
    defaults_cfg = cfg.agents.defaults.block_streaming_coalesce if cfg else None

    def pick(name: str) -> int | None:
        for source in (provider_cfg, defaults_cfg):
            value = getattr(source, name, None) if source else None
            if value is not None:
                return value
        return None

    text_limit = resolve_text_chunk_limit(cfg, provider)
    max_chars = max(1, min(pick("max_chars") or chunking.max_chars, text_limit))
    min_chars = min(max(1, pick("min_chars") or chunking.min_chars), max_chars)
    idle_ms = pick("idle_ms")
    return CoalescingConfig(
        min_chars=min_chars,
        max_chars=max_chars,
        idle_ms=max(0, idle_ms if idle_ms is not None else DEFAULT_BLOCK_STREAM_COALESCE_IDLE_MS),
        joiner=_JOINERS.get(chunking.break_preference, "\n\n"),
    )


OnFlush = Callable[[ReplyPayload], Awaitable[Any] | Any]


class BlockReplyCoalescer:
    """
    Buffer streamed text blocks and emit them in larger pieces.

    Text accumulates until ``min_chars`` is reached and the stream has been
    idle for ``idle_ms``, or until ``max_chars`` forces a flush. Media payloads
    are never merged: buffered text is flushed first and the media is emitted
    as its own event. ``should_abort`` is checked before every emit; an
    aborted coalescer drops its buffer.
    """

    def __init__(
        self,
        config: CoalescingConfig,
        should_abort: Callable[[], bool],
        on_flush: OnFlush,
    ):
        self.min_chars = max(1, int(config.min_chars))
        self.max_chars = max(self.min_chars, int(config.max_chars))
        self.idle_ms = max(0, int(config.idle_ms))
        self.joiner = config.joiner or ""
        self._should_abort = should_abort
        self._on_flush = on_flush
        self._buffer_text = ""
        self._buffer_reply_to_id: str | None = None
        self._buffer_audio_as_voice = False
        self._idle_timer: asyncio.TimerHandle | None = None
        self._pending: list[asyncio.Task[Any]] = []
        self._tail: asyncio.Future[Any] | None = None
        self._stopped = False

    def has_buffered(self) -> bool:
        return bool(self._buffer_text)

    def enqueue(self, payload: ReplyPayload) -> None:
        if self._stopped or self._should_abort():
            return

        if payload.has_media:
            self._flush_now(force=True)
            self._emit(payload)
            return

        text = payload.text or ""
        if not text.strip():
            return

        if self._buffer_text and (
            self._buffer_reply_to_id != payload.reply_to_id
            or self._buffer_audio_as_voice != payload.audio_as_voice
        ):
            self._flush_now(force=True)

        if not self._buffer_text:
            self._buffer_reply_to_id = payload.reply_to_id
            self._buffer_audio_as_voice = payload.audio_as_voice

        next_text = f"{self._buffer_text}{self.joiner}{text}" if self._buffer_text else text
        if len(next_text) > self.max_chars:
            if self._buffer_text:
                self._flush_now(force=True)
                self._buffer_reply_to_id = payload.reply_to_id
                self._buffer_audio_as_voice = payload.audio_as_voice
                if len(text) <= self.max_chars:
                    self._buffer_text = text
                    self._schedule_idle_flush()
                    return
            self._emit(payload)
            return

        self._buffer_text = next_text
        if len(self._buffer_text) >= self.max_chars:
            self._flush_now(force=True)
            return
        self._schedule_idle_flush()

    async def flush(self, force: bool = False) -> None:
        """Flush buffered text and wait for every emitted event to be handled."""
        self._flush_now(force=force)
        await self._drain_pending()

    def stop(self) -> None:
        """Cancel the idle timer. Safe to call repeatedly."""
        self._stopped = True
        self._clear_idle_timer()

    def _flush_now(self, force: bool) -> None:
        self._clear_idle_timer()
        if self._should_abort():
            self._reset_buffer()
            return
        if not self._buffer_text:
            return
        if not force and len(self._buffer_text) < self.min_chars:
            self._schedule_idle_flush()
            return
        payload = ReplyPayload(
            text=self._buffer_text,
            reply_to_id=self._buffer_reply_to_id,
            audio_as_voice=self._buffer_audio_as_voice,
        )
        self._reset_buffer()
        self._emit(payload)

    def _emit(self, payload: ReplyPayload) -> None:
        result = self._on_flush(payload)
        if not inspect.isawaitable(result):
            return
        previous = self._tail
        task = asyncio.ensure_future(self._await_in_order(previous, result))
        self._tail = task
        self._pending = [t for t in self._pending if not t.done()]
        self._pending.append(task)

    @staticmethod
    async def _await_in_order(previous: asyncio.Future[Any] | None, result: Awaitable[Any]) -> None:
        if previous is not None:
            await previous
        try:
            await result
        except Exception as e:
            logger.error(f"Block reply flush failed: {e}")

    async def _drain_pending(self) -> None:
        while self._pending:
            task = self._pending.pop(0)
            await task

    def _reset_buffer(self) -> None:
        self._buffer_text = ""
        self._buffer_reply_to_id = None
        self._buffer_audio_as_voice = False

    def _clear_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _schedule_idle_flush(self) -> None:
        if self.idle_ms <= 0 or self._stopped:
            return
        self._clear_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(self.idle_ms / 1000, self._on_idle)

    def _on_idle(self) -> None:
        self._idle_timer = None
        self._flush_now(force=False)
