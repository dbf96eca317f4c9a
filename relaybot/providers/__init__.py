"""Provider ids, adapter interface and registry."""

from relaybot.providers.base import ProviderAdapter, ProviderRegistry, SendResult
from relaybot.providers.polls import PollInput, normalize_poll_input

__all__ = ["ProviderAdapter", "ProviderRegistry", "SendResult", "PollInput", "normalize_poll_input"]
