"""Exception types shared across the gateway core."""

from __future__ import annotations


class RelaybotError(Exception):
    """Base class for relaybot errors."""


class ConfigurationError(RelaybotError):
    """Operator misconfiguration (unknown provider, invalid binding spec, ...)."""


class BindingSpecError(ConfigurationError):
    """A binding spec string could not be parsed."""


class UnsupportedProviderError(ConfigurationError):
    """Raised when a provider id is not one relaybot can deliver to."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class UnsupportedActionError(RelaybotError):
    """Raised when a provider adapter does not implement an action."""

    def __init__(self, action: str, provider: str):
        self.action = action
        self.provider = provider
        super().__init__(f"Action {action} is not supported for provider {provider}.")
