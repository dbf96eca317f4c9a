"""Provider adapter interface and registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from relaybot.errors import UnsupportedActionError, UnsupportedProviderError
from relaybot.providers.ids import normalize_message_provider

if TYPE_CHECKING:
    from relaybot.providers.polls import PollInput


@dataclass
class SendResult:
    """Outcome of a provider send. ``extra`` carries provider-specific ids (chatId, channelId, ...)."""

    message_id: str
    extra: dict[str, Any] = field(default_factory=dict)


ActionHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    An adapter owns the wire client for one chat provider. Only
    ``send_message`` is required; polls and provider actions (react, edit,
    delete, pin, ...) are optional and registered per adapter.
    """

    id: str = ""
    text_chunk_limit: int = 4000

    def __init__(self) -> None:
        self.actions: dict[str, ActionHandler] = {}
        self._running = False

    async def start(self) -> None:
        """Start receiving inbound messages. Adapters without an inbound side just mark themselves running."""
        self._running = True

    async def stop(self) -> None:
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    async def send_message(
        self,
        to: str,
        text: str,
        *,
        media_url: str | None = None,
        account_id: str | None = None,
        reply_to_id: str | None = None,
        thread_id: str | int | None = None,
    ) -> SendResult:
        """Deliver text (and optionally one media attachment) to ``to``."""

    async def send_poll(
        self,
        to: str,
        poll: PollInput,
        *,
        account_id: str | None = None,
    ) -> SendResult:
        raise UnsupportedActionError("poll", self.id)

    def register_action(self, name: str, handler: ActionHandler) -> None:
        self.actions[name.strip().lower()] = handler


class ProviderRegistry:
    """Provider id -> adapter."""

    def __init__(self) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        provider = normalize_message_provider(adapter.id) or adapter.id
        if provider in self._adapters:
            logger.warning(f"Replacing provider adapter for {provider}")
        self._adapters[provider] = adapter

    def unregister(self, provider: str) -> ProviderAdapter | None:
        return self._adapters.pop(normalize_message_provider(provider) or provider, None)

    def get(self, provider: str | None) -> ProviderAdapter | None:
        key = normalize_message_provider(provider)
        return self._adapters.get(key) if key else None

    def require(self, provider: str | None) -> ProviderAdapter:
        adapter = self.get(provider)
        if adapter is None:
            raise UnsupportedProviderError(provider or "")
        return adapter

    def ids(self) -> list[str]:
        return list(self._adapters)

    def adapters(self) -> list[ProviderAdapter]:
        return list(self._adapters.values())

    def __contains__(self, provider: object) -> bool:
        return isinstance(provider, str) and self.get(provider) is not None

    def __len__(self) -> int:
        return len(self._adapters)

    async def run_action(self, provider: str, action: str, params: dict[str, Any]) -> Any:
        """Invoke an optional provider action such as ``react`` or ``edit``."""
        adapter = self.require(provider)
        handler = adapter.actions.get(action.strip().lower())
        if handler is None:
            raise UnsupportedActionError(action, adapter.id)
        return await handler(params)
