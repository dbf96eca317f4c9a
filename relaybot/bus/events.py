"""Event types for the message bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from relaybot.config.schema import PeerKind


@dataclass
class InboundMessage:
    """Message received from a chat provider."""

    channel: str  # telegram, discord, slack, whatsapp, ...
    sender_id: str  # Provider-level user identifier
    chat_id: str  # Chat/group identifier
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    # Routing inputs for the binding resolver
    account_id: str | None = None
    peer_kind: PeerKind = "dm"
    peer_id: str | None = None  # defaults to chat_id
    guild_id: str | None = None
    team_id: str | None = None
    thread_id: str | int | None = None
    message_id: str | None = None


@dataclass
class OutboundMessage:
    """Message to send to a chat provider."""

    channel: str
    chat_id: str
    content: str
    reply_to: str | None = None
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    account_id: str | None = None
    thread_id: str | int | None = None
