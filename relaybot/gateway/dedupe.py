"""Idempotency cache for gateway send/poll requests."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from relaybot.gateway.protocol import ErrorShape

DEDUPE_TTL_MS = 5 * 60 * 1000
DEDUPE_MAX = 1000


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class DedupeEntry:
    ts: float
    ok: bool
    payload: dict[str, Any] | None = None
    error: ErrorShape | None = None


@dataclass
class DedupeCache:
    """
    Insertion-ordered map of request key -> outcome.

    Entries expire after ``ttl_ms``; once more than ``max_entries`` are held,
    the oldest are evicted. ``clock`` returns milliseconds.
    """

    ttl_ms: int = DEDUPE_TTL_MS
    max_entries: int = DEDUPE_MAX
    clock: Callable[[], float] = field(default=_now_ms)
    _entries: dict[str, DedupeEntry] = field(default_factory=dict, init=False, repr=False)

    def get(self, key: str) -> DedupeEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() - entry.ts > self.ttl_ms:
            self._entries.pop(key, None)
            return None
        return entry

    def set(
        self,
        key: str,
        ok: bool,
        payload: dict[str, Any] | None = None,
        error: ErrorShape | None = None,
    ) -> DedupeEntry:
        entry = DedupeEntry(ts=self.clock(), ok=ok, payload=payload, error=error)
        self._entries.pop(key, None)
        self._entries[key] = entry
        self.prune()
        return entry

    def prune(self) -> int:
        """Drop expired entries and trim to ``max_entries``. Returns how many were removed."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if now - entry.ts > self.ttl_ms]
        for key in expired:
            del self._entries[key]
        removed = len(expired)
        while len(self._entries) > self.max_entries:
            del self._entries[next(iter(self._entries))]
            removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None
