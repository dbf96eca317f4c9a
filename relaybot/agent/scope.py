"""Agent list helpers: default agent selection and per-agent directories."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from relaybot.config.schema import AgentEntry, Config
from relaybot.routing.session_key import DEFAULT_AGENT_ID, normalize_agent_id


def list_agents(cfg: Config | None) -> list[AgentEntry]:
    if cfg is None:
        return []
    return list(cfg.agents.entries)


class AgentScope:
    """
    Resolves default/known agents for a config.

    Holds the "multiple default agents" warning state so the warning is logged
    once per scope instead of once per process. Tests create a fresh scope or
    call ``reset()``.
    """

    def __init__(self) -> None:
        self.default_agent_warned = False

    def reset(self) -> None:
        self.default_agent_warned = False

    def resolve_default_agent_id(self, cfg: Config | None) -> str:
        agents = list_agents(cfg)
        if not agents:
            return DEFAULT_AGENT_ID
        defaults = [agent for agent in agents if agent.default]
        if len(defaults) > 1 and not self.default_agent_warned:
            self.default_agent_warned = True
            logger.warning("Multiple agents marked default=true; using the first entry as default.")
        chosen = (defaults[0] if defaults else agents[0]).id.strip()
        return normalize_agent_id(chosen or DEFAULT_AGENT_ID)

    def pick_existing_agent_id(self, cfg: Config | None, agent_id: str | None) -> str:
        """Return agent_id when it is configured, otherwise the default agent."""
        trimmed = (agent_id or "").strip()
        if not trimmed:
            return self.resolve_default_agent_id(cfg)
        agents = list_agents(cfg)
        if not agents:
            return normalize_agent_id(trimmed)
        wanted = normalize_agent_id(trimmed)
        for entry in agents:
            if normalize_agent_id(entry.id) == wanted and entry.id.strip():
                return normalize_agent_id(entry.id)
        return self.resolve_default_agent_id(cfg)


def resolve_agent_entry(cfg: Config | None, agent_id: str) -> AgentEntry | None:
    wanted = normalize_agent_id(agent_id)
    for entry in list_agents(cfg):
        if normalize_agent_id(entry.id) == wanted:
            return entry
    return None


def resolve_agent_workspace_dir(cfg: Config, agent_id: str, scope: AgentScope | None = None) -> Path:
    """Configured workspace, else the defaults workspace for the default agent, else ~/relaybot-<id>."""
    agent_id = normalize_agent_id(agent_id)
    entry = resolve_agent_entry(cfg, agent_id)
    configured = (entry.workspace or "").strip() if entry else ""
    if configured:
        return Path(configured).expanduser()
    if agent_id == (scope or AgentScope()).resolve_default_agent_id(cfg):
        return cfg.workspace_path
    return Path.home() / f"relaybot-{agent_id}"


def resolve_agent_dir(cfg: Config, agent_id: str) -> Path:
    agent_id = normalize_agent_id(agent_id)
    entry = resolve_agent_entry(cfg, agent_id)
    configured = (entry.agent_dir or "").strip() if entry else ""
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".relaybot" / "agents" / agent_id / "agent"
