"""Reply payloads produced by the agent and their normalization before delivery."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

HEARTBEAT_TOKEN = "HEARTBEAT_OK"
SILENT_REPLY_TOKEN = "NO_REPLY"


@dataclass
class ReplyPayload:
    """One unit of agent output: text and/or media."""

    text: str | None = None
    media_url: str | None = None
    media_urls: list[str] = field(default_factory=list)
    reply_to_id: str | None = None
    audio_as_voice: bool = False
    is_error: bool = False

    @property
    def has_media(self) -> bool:
        return bool(self.media_url) or bool(self.media_urls)

    @property
    def all_media_urls(self) -> list[str]:
        urls = list(self.media_urls)
        if self.media_url and self.media_url not in urls:
            urls.insert(0, self.media_url)
        return urls


def _strip_heartbeat(text: str) -> str:
    if HEARTBEAT_TOKEN not in text:
        return text
    return text.replace(HEARTBEAT_TOKEN, "").strip()


def normalize_reply_payload(
    payload: ReplyPayload,
    response_prefix: str | None = None,
) -> ReplyPayload | None:
    """
    Prepare a payload for delivery.

    Returns None when nothing should be sent: empty payloads, the silent reply
    token, or a bare heartbeat acknowledgement.
    """
    text = payload.text or ""
    if not text.strip() and not payload.has_media:
        return None
    if text.strip() == SILENT_REPLY_TOKEN and not payload.has_media:
        return None

    text = _strip_heartbeat(text)
    if not text and not payload.has_media:
        return None

    prefix = (response_prefix or "").strip()
    if prefix and text and not text.startswith(prefix):
        text = f"{prefix} {text}"

    return replace(payload, text=text or None)
