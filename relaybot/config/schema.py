"""Configuration schema using Pydantic."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PeerKind = Literal["dm", "group", "channel"]
QueueMode = Literal["steer", "followup", "collect", "steer-backlog", "interrupt", "queue"]
QueueDropPolicy = Literal["old", "new", "summarize"]
BreakPreference = Literal["paragraph", "newline", "sentence"]


class Base(BaseModel):
    """Accept both camelCase (config file) and snake_case (code) keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PeerMatch(Base):
    kind: PeerKind
    id: str


class BindingMatch(Base):
    """Match side of a routing rule. A missing account_id means the default account only."""

    provider: str
    account_id: str | None = None
    peer: PeerMatch | None = None
    guild_id: str | None = None
    team_id: str | None = None


class AgentBinding(Base):
    agent_id: str
    match: BindingMatch


class AgentEntry(Base):
    id: str
    default: bool = False
    name: str | None = None
    workspace: str | None = None
    agent_dir: str | None = None
    model: str | None = None


class BlockStreamingChunkConfig(Base):
    min_chars: int | None = None
    max_chars: int | None = None
    break_preference: BreakPreference | None = None


class BlockStreamingCoalesceConfig(Base):
    min_chars: int | None = None
    max_chars: int | None = None
    idle_ms: int | None = None


class AgentDefaults(Base):
    workspace: str = "~/.relaybot/workspace"
    model: str | None = None
    timeout_seconds: int = 600
    block_streaming_default: Literal["on", "off"] = "off"
    block_streaming_break: Literal["text_end", "message_end"] = "text_end"
    block_streaming_chunk: BlockStreamingChunkConfig = Field(default_factory=BlockStreamingChunkConfig)
    block_streaming_coalesce: BlockStreamingCoalesceConfig = Field(
        default_factory=BlockStreamingCoalesceConfig
    )


class AgentsConfig(Base):
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)
    entries: list[AgentEntry] = Field(default_factory=list, alias="list")


class QueueConfig(Base):
    mode: QueueMode | None = None
    by_provider: dict[str, QueueMode] = Field(default_factory=dict)
    debounce_ms: int | None = None
    cap: int | None = None
    drop: QueueDropPolicy | None = None


class MessagesConfig(Base):
    response_prefix: str | None = None
    queue: QueueConfig = Field(default_factory=QueueConfig)


class ProviderChannelConfig(Base):
    """Settings shared by every provider channel."""

    enabled: bool = False
    text_chunk_limit: int | None = None
    block_streaming_coalesce: BlockStreamingCoalesceConfig | None = None


class TelegramConfig(ProviderChannelConfig):
    token: str = ""
    proxy: str | None = None


class ChannelsConfig(Base):
    whatsapp: ProviderChannelConfig = Field(default_factory=ProviderChannelConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    discord: ProviderChannelConfig = Field(default_factory=ProviderChannelConfig)
    slack: ProviderChannelConfig = Field(default_factory=ProviderChannelConfig)
    signal: ProviderChannelConfig = Field(default_factory=ProviderChannelConfig)
    imessage: ProviderChannelConfig = Field(default_factory=ProviderChannelConfig)
    msteams: ProviderChannelConfig = Field(default_factory=ProviderChannelConfig)

    def get(self, provider: str | None) -> ProviderChannelConfig | None:
        """Look up a provider channel config by id."""
        if not provider:
            return None
        value = getattr(self, provider, None)
        return value if isinstance(value, ProviderChannelConfig) else None


class GatewayConfig(Base):
    dedupe_ttl_ms: int = 5 * 60 * 1000
    dedupe_max_entries: int = 1000


class Config(Base):
    """Root configuration for relaybot."""

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    bindings: list[AgentBinding] = Field(default_factory=list)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded default workspace path."""
        return Path(self.agents.defaults.workspace).expanduser()
