"""Message provider identifiers and normalization."""

from __future__ import annotations

DELIVERABLE_MESSAGE_PROVIDERS: tuple[str, ...] = (
    "whatsapp",
    "telegram",
    "discord",
    "slack",
    "signal",
    "imessage",
    "msteams",
)

POLL_PROVIDERS: frozenset[str] = frozenset({"whatsapp", "discord", "msteams"})

_ALIASES = {
    "imsg": "imessage",
    "teams": "msteams",
}


def normalize_message_provider(raw: str | None) -> str | None:
    """Lower-case a provider id and resolve aliases; None when blank."""
    normalized = (raw or "").strip().lower()
    if not normalized:
        return None
    return _ALIASES.get(normalized, normalized)


def is_deliverable_message_provider(value: str | None) -> bool:
    return value in DELIVERABLE_MESSAGE_PROVIDERS
