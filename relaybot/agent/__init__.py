"""Agent scope and inbound processing loop."""

from relaybot.agent.scope import AgentScope

__all__ = ["AgentScope"]
