"""Deliver replies to a provider other than the one the request arrived on."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from relaybot.config.schema import Config
from relaybot.providers.base import ProviderRegistry
from relaybot.providers.ids import is_deliverable_message_provider, normalize_message_provider
from relaybot.reply.coalescer import resolve_text_chunk_limit
from relaybot.reply.payload import ReplyPayload, normalize_reply_payload


def is_routable_channel(channel: str | None) -> bool:
    return is_deliverable_message_provider(normalize_message_provider(channel))


def chunk_text(text: str, limit: int) -> list[str]:
    """Split text into chunks of at most ``limit`` chars, preferring paragraph then line breaks."""
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[: limit + 1]
        split_at = window.rfind("\n\n")
        if split_at <= 0:
            split_at = window.rfind("\n")
        if split_at <= 0:
            split_at = window.rfind(" ")
        if split_at <= 0:
            split_at = limit
        chunk = remaining[:split_at].rstrip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split_at:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


@dataclass
class RouteReplyRequest:
    payload: ReplyPayload
    channel: str
    to: str
    session_key: str | None = None
    account_id: str | None = None
    thread_id: str | int | None = None
    cfg: Config | None = None


@dataclass
class RouteReplyResult:
    ok: bool
    message_id: str | None = None
    error: str | None = None


class ReplyRouter:
    """
    Sends a reply payload through the registered adapter for a channel.

    Text longer than the provider's chunk limit is split; with media, the
    text rides as the caption of the first attachment. Never raises: send
    failures come back as ``ok=False``.
    """

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    async def route_reply(self, request: RouteReplyRequest) -> RouteReplyResult:
        channel = normalize_message_provider(request.channel)
        if not is_routable_channel(channel):
            return RouteReplyResult(ok=False, error=f"Unknown channel: {request.channel}")

        prefix = request.cfg.messages.response_prefix if request.cfg else None
        payload = normalize_reply_payload(request.payload, prefix)
        if payload is None:
            return RouteReplyResult(ok=True)

        adapter = self.registry.get(channel)
        if adapter is None:
            return RouteReplyResult(ok=False, error=f"Provider {channel} is not configured")

        limit = min(adapter.text_chunk_limit, resolve_text_chunk_limit(request.cfg, channel))
        text = payload.text or ""
        media_urls = payload.all_media_urls
        last_message_id: str | None = None
        try:
            if media_urls:
                for idx, url in enumerate(media_urls):
                    result = await adapter.send_message(
                        request.to,
                        text if idx == 0 else "",
                        media_url=url,
                        account_id=request.account_id,
                        reply_to_id=payload.reply_to_id,
                        thread_id=request.thread_id,
                    )
                    last_message_id = result.message_id
            else:
                for chunk in chunk_text(text, limit):
                    result = await adapter.send_message(
                        request.to,
                        chunk,
                        account_id=request.account_id,
                        reply_to_id=payload.reply_to_id,
                        thread_id=request.thread_id,
                    )
                    last_message_id = result.message_id
        except Exception as e:
            logger.error(f"Failed to route reply to {channel}:{request.to}: {e}")
            return RouteReplyResult(ok=False, message_id=last_message_id, error=str(e))

        logger.debug(f"Routed reply to {channel}:{request.to} (session={request.session_key})")
        return RouteReplyResult(ok=True, message_id=last_message_id)
