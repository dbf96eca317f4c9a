"""Per-session followup queue used while an agent run is in flight."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Literal

from loguru import logger

from relaybot.config.schema import Config, QueueDropPolicy, QueueMode

COLLECT_TITLE = "[Queued messages while agent was busy]"

DEFAULT_QUEUE_MODE: QueueMode = "collect"
DEFAULT_QUEUE_DEBOUNCE_MS = 1000
DEFAULT_QUEUE_CAP = 20
DEFAULT_QUEUE_DROP: QueueDropPolicy = "summarize"

SUMMARY_LINE_MAX_CHARS = 160

DedupeMode = Literal["message-id", "prompt", "none"]


@dataclass
class FollowupRunSettings:
    """Everything needed to start the agent again for a queued prompt."""

    agent_id: str
    agent_dir: str
    session_id: str
    session_file: str
    workspace_dir: str
    config: Any
    provider: str
    model: str
    timeout_ms: int
    block_reply_break: Literal["text_end", "message_end"] = "text_end"
    session_key: str | None = None


@dataclass
class FollowupRun:
    prompt: str
    run: FollowupRunSettings
    enqueued_at: float = field(default_factory=time.time)
    message_id: str | None = None
    originating_channel: str | None = None
    originating_to: str | None = None
    originating_account_id: str | None = None
    originating_thread_id: str | int | None = None

    @property
    def routing_key(self) -> tuple[str | None, str | None, str | None, str | None]:
        thread = None if self.originating_thread_id is None else str(self.originating_thread_id)
        return (self.originating_channel, self.originating_to, self.originating_account_id, thread)


@dataclass(frozen=True)
class QueueSettings:
    mode: QueueMode = DEFAULT_QUEUE_MODE
    debounce_ms: int = DEFAULT_QUEUE_DEBOUNCE_MS
    cap: int = DEFAULT_QUEUE_CAP
    drop_policy: QueueDropPolicy = DEFAULT_QUEUE_DROP


RunFollowup = Callable[[FollowupRun], Awaitable[None]]


@dataclass
class _QueueState:
    settings: QueueSettings
    items: list[FollowupRun] = field(default_factory=list)
    dropped_count: int = 0
    summary_lines: list[str] = field(default_factory=list)
    last_enqueued_at: float = 0.0
    timer: asyncio.TimerHandle | None = None
    drain_task: asyncio.Task[None] | None = None
    run_followup: RunFollowup | None = None


def normalize_queue_mode(raw: str | None) -> QueueMode | None:
    """Map user-facing queue mode spellings onto a QueueMode."""
    cleaned = (raw or "").strip().lower()
    if not cleaned:
        return None
    if cleaned in {"queue", "queued"}:
        return "steer"
    if cleaned in {"interrupt", "interrupts", "abort"}:
        return "interrupt"
    if cleaned in {"steer", "steering"}:
        return "steer"
    if cleaned in {"followup", "follow-ups", "followups"}:
        return "followup"
    if cleaned in {"collect", "coalesce"}:
        return "collect"
    if cleaned in {"steer+backlog", "steer-backlog", "steer_backlog"}:
        return "steer-backlog"
    return None


def normalize_queue_drop_policy(raw: str | None) -> QueueDropPolicy | None:
    cleaned = (raw or "").strip().lower()
    if cleaned in {"old", "oldest"}:
        return "old"
    if cleaned in {"new", "newest"}:
        return "new"
    if cleaned in {"summarize", "summary"}:
        return "summarize"
    return None


def resolve_queue_settings(
    cfg: Config | None,
    provider: str | None = None,
    inline_mode: str | None = None,
    inline_debounce_ms: int | None = None,
    inline_cap: int | None = None,
    inline_drop: str | None = None,
) -> QueueSettings:
    """Layer inline overrides over per-provider config over global config over defaults."""
    queue_cfg = cfg.messages.queue if cfg else None
    provider_key = (provider or "").strip().lower()

    mode = normalize_queue_mode(inline_mode)
    if mode is None and queue_cfg and provider_key:
        mode = normalize_queue_mode(queue_cfg.by_provider.get(provider_key))
    if mode is None and queue_cfg:
        mode = normalize_queue_mode(queue_cfg.mode)

    debounce_ms = inline_debounce_ms
    if debounce_ms is None and queue_cfg:
        debounce_ms = queue_cfg.debounce_ms
    cap = inline_cap
    if cap is None and queue_cfg:
        cap = queue_cfg.cap
    drop = normalize_queue_drop_policy(inline_drop)
    if drop is None and queue_cfg:
        drop = queue_cfg.drop

    return QueueSettings(
        mode=mode or DEFAULT_QUEUE_MODE,
        debounce_ms=max(0, int(debounce_ms)) if debounce_ms is not None else DEFAULT_QUEUE_DEBOUNCE_MS,
        cap=max(1, int(cap)) if cap is not None else DEFAULT_QUEUE_CAP,
        drop_policy=drop or DEFAULT_QUEUE_DROP,
    )


def _summary_line(prompt: str) -> str:
    cleaned = re.sub(r"\s+", " ", prompt or "").strip()
    if len(cleaned) <= SUMMARY_LINE_MAX_CHARS:
        return cleaned
    return cleaned[: SUMMARY_LINE_MAX_CHARS - 1].rstrip() + "…"


class FollowupQueue:
    """
    Followup queues keyed by session key.

    Enqueueing is synchronous. Draining runs on the event loop behind a
    debounce timer (one per key, re-armed on every enqueue) and invokes the
    followup callback one run at a time in enqueue order, so an agent never
    runs twice concurrently for the same session.
    """

    def __init__(self) -> None:
        self._queues: dict[str, _QueueState] = {}

    def enqueue_followup_run(
        self,
        key: str,
        run: FollowupRun,
        settings: QueueSettings,
        dedupe_mode: DedupeMode = "message-id",
    ) -> bool:
        """Queue a run for key. Returns False when it was deduplicated or rejected by the cap."""
        state = self._queues.get(key)
        if state is None:
            state = _QueueState(settings=settings)
            self._queues[key] = state
        else:
            state.settings = settings

        if self._is_duplicate(state, run, dedupe_mode):
            logger.debug(f"Followup for {key} deduplicated")
            return False

        cap = settings.cap
        if cap > 0 and len(state.items) >= cap:
            if settings.drop_policy == "new":
                logger.warning(f"Followup queue for {key} is full (cap={cap}); dropping new message")
                return False
            dropped = state.items.pop(0)
            if settings.drop_policy == "summarize":
                state.dropped_count += 1
                state.summary_lines.append(_summary_line(dropped.prompt))
            logger.warning(f"Followup queue for {key} is full (cap={cap}); dropped oldest message")

        state.items.append(run)
        state.last_enqueued_at = time.monotonic()
        if state.timer is not None:
            self._arm_timer(key, state)
        return True

    def schedule_followup_drain(self, key: str, run_followup: RunFollowup) -> None:
        """Arm the drain timer for key; no-op when the key has nothing queued."""
        state = self._queues.get(key)
        if state is None:
            return
        state.run_followup = run_followup
        if state.drain_task is not None and not state.drain_task.done():
            return
        if not state.items and not state.dropped_count:
            self._queues.pop(key, None)
            return
        self._arm_timer(key, state)

    def get_followup_queue_depth(self, key: str) -> int:
        state = self._queues.get(key)
        return len(state.items) if state else 0

    def is_draining(self, key: str) -> bool:
        state = self._queues.get(key)
        return bool(state and state.drain_task is not None and not state.drain_task.done())

    def clear_followup_queue(self, key: str) -> int:
        """
        Drop everything queued for key. Returns the number of runs removed.

        A followup that is already running is left alone; the drain stops
        once it finishes unless new runs are queued in the meantime.
        """
        state = self._queues.get(key)
        if state is None:
            return 0
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None
        removed = len(state.items)
        state.items.clear()
        state.dropped_count = 0
        state.summary_lines = []
        if state.drain_task is None or state.drain_task.done():
            self._queues.pop(key, None)
        return removed

    async def close(self) -> None:
        """Cancel every timer and drain, dropping whatever is still queued."""
        drains: list[asyncio.Task[None]] = []
        for state in self._queues.values():
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None
            state.items.clear()
            state.run_followup = None
            if state.drain_task is not None and not state.drain_task.done():
                state.drain_task.cancel()
                drains.append(state.drain_task)
        self._queues.clear()
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)

    async def wait_until_idle(self, key: str) -> None:
        """Wait until key has no armed timer, running drain or queued runs."""
        while True:
            state = self._queues.get(key)
            if state is None:
                return
            if state.drain_task is not None and not state.drain_task.done():
                await asyncio.shield(state.drain_task)
                continue
            if state.timer is None:
                return
            await asyncio.sleep(max(state.settings.debounce_ms, 1) / 1000)

    @staticmethod
    def _is_duplicate(state: _QueueState, run: FollowupRun, dedupe_mode: DedupeMode) -> bool:
        if dedupe_mode == "message-id":
            return bool(run.message_id) and any(item.message_id == run.message_id for item in state.items)
        if dedupe_mode == "prompt":
            return any(item.prompt == run.prompt for item in state.items)
        return False

    def _arm_timer(self, key: str, state: _QueueState) -> None:
        if state.timer is not None:
            state.timer.cancel()
        loop = asyncio.get_running_loop()
        state.timer = loop.call_later(state.settings.debounce_ms / 1000, self._start_drain, key)

    def _start_drain(self, key: str) -> None:
        state = self._queues.get(key)
        if state is None:
            return
        state.timer = None
        state.drain_task = asyncio.get_running_loop().create_task(self._drain(key, state))

    async def _wait_for_debounce(self, state: _QueueState) -> None:
        debounce = state.settings.debounce_ms / 1000
        while True:
            remaining = debounce - (time.monotonic() - state.last_enqueued_at)
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)

    async def _drain(self, key: str, state: _QueueState) -> None:
        try:
            while state.items:
                await self._wait_for_debounce(state)
                if not state.items:
                    break
                run = self._next_run(state)
                callback = state.run_followup
                if callback is None:
                    break
                try:
                    await callback(run)
                except Exception as e:
                    logger.error(f"Followup run failed for {key}: {e}")
        finally:
            state.drain_task = None
            if self._queues.get(key) is state:
                if not state.items:
                    self._queues.pop(key, None)
                elif state.run_followup is not None:
                    self._arm_timer(key, state)

    def _take_summary(self, state: _QueueState) -> str | None:
        if not state.dropped_count:
            return None
        count = state.dropped_count
        noun = "message" if count == 1 else "messages"
        lines = [f"[Queue overflow] Dropped {count} {noun} due to cap."]
        if state.summary_lines:
            lines.append("Summary:")
            lines.extend(f"- {line}" for line in state.summary_lines)
        state.dropped_count = 0
        state.summary_lines = []
        return "\n".join(lines)

    def _next_run(self, state: _QueueState) -> FollowupRun:
        """Pop the next run; in collect mode merge the consecutive runs bound for the same destination."""
        first = state.items.pop(0)
        batch = [first]
        if state.settings.mode == "collect":
            while state.items and state.items[0].routing_key == first.routing_key:
                batch.append(state.items.pop(0))
        summary = self._take_summary(state)

        if len(batch) == 1:
            if not summary:
                return first
            return replace(first, prompt=f"{summary}\n\n{first.prompt}")

        parts = [COLLECT_TITLE]
        if summary:
            parts.append(summary)
        for idx, item in enumerate(batch, 1):
            parts.append(f"---\nQueued #{idx}\n{item.prompt}".strip())
        last = batch[-1]
        return replace(
            last,
            prompt="\n\n".join(parts),
            enqueued_at=time.time(),
            originating_channel=first.originating_channel,
            originating_to=first.originating_to,
            originating_account_id=first.originating_account_id,
            originating_thread_id=first.originating_thread_id,
        )
