"""Provider channel adapters and their manager."""

from relaybot.channels.manager import ChannelManager

__all__ = ["ChannelManager"]
