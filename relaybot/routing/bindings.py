"""Registering and describing agent bindings (routing rules)."""

from __future__ import annotations

from dataclasses import dataclass, field

from relaybot.config.schema import AgentBinding, BindingMatch, Config
from relaybot.errors import BindingSpecError
from relaybot.providers.ids import is_deliverable_message_provider, normalize_message_provider
from relaybot.routing.session_key import DEFAULT_ACCOUNT_ID, normalize_agent_id


@dataclass
class BindingConflict:
    binding: AgentBinding
    existing_agent_id: str


@dataclass
class BindingApplyResult:
    config: Config
    added: list[AgentBinding] = field(default_factory=list)
    skipped: list[AgentBinding] = field(default_factory=list)
    conflicts: list[BindingConflict] = field(default_factory=list)


def binding_match_key(match: BindingMatch) -> str:
    """Uniqueness key of a binding: provider, account (or default), peer, guild, team."""
    account_id = (match.account_id or "").strip() or DEFAULT_ACCOUNT_ID
    provider = normalize_message_provider(match.provider) or ""
    return "|".join([
        provider,
        account_id,
        match.peer.kind if match.peer else "",
        match.peer.id.strip() if match.peer else "",
        (match.guild_id or "").strip(),
        (match.team_id or "").strip(),
    ])


def apply_agent_bindings(cfg: Config, bindings: list[AgentBinding]) -> BindingApplyResult:
    """
    Append bindings to a config, first registration wins.

    A binding whose match key already exists is skipped when it points at the
    same agent and reported as a conflict otherwise. The input config is not
    mutated; a copy is returned when anything was added.
    """
    existing_map: dict[str, str] = {}
    for binding in cfg.bindings:
        existing_map.setdefault(binding_match_key(binding.match), normalize_agent_id(binding.agent_id))

    result = BindingApplyResult(config=cfg)
    for binding in bindings:
        agent_id = normalize_agent_id(binding.agent_id)
        key = binding_match_key(binding.match)
        existing_agent_id = existing_map.get(key)
        if existing_agent_id:
            if existing_agent_id == agent_id:
                result.skipped.append(binding)
            else:
                result.conflicts.append(BindingConflict(binding=binding, existing_agent_id=existing_agent_id))
            continue
        existing_map[key] = agent_id
        result.added.append(binding.model_copy(update={"agent_id": agent_id}))

    if result.added:
        result.config = cfg.model_copy(update={"bindings": [*cfg.bindings, *result.added]})
    return result


def prune_agent_bindings(cfg: Config, agent_id: str) -> tuple[Config, int]:
    """Remove every binding that points at agent_id. Returns (config, removed count)."""
    wanted = normalize_agent_id(agent_id)
    kept = [b for b in cfg.bindings if normalize_agent_id(b.agent_id) != wanted]
    removed = len(cfg.bindings) - len(kept)
    if not removed:
        return cfg, 0
    return cfg.model_copy(update={"bindings": kept}), removed


def describe_binding(binding: AgentBinding) -> str:
    match = binding.match
    parts = [match.provider]
    if match.account_id:
        parts.append(f"accountId={match.account_id}")
    if match.peer:
        parts.append(f"peer={match.peer.kind}:{match.peer.id}")
    if match.guild_id:
        parts.append(f"guild={match.guild_id}")
    if match.team_id:
        parts.append(f"team={match.team_id}")
    return " ".join(parts)


def parse_binding_spec(agent_id: str, spec: str) -> AgentBinding:
    """
    Parse a ``provider[:accountId]`` binding spec.

    Raises:
        BindingSpecError: empty spec or a provider relaybot cannot deliver to.
    """
    raw = (spec or "").strip()
    if not raw:
        raise BindingSpecError("Binding spec is empty; expected provider[:accountId].")
    provider_part, _, account_part = raw.partition(":")
    provider = normalize_message_provider(provider_part)
    if not provider or not is_deliverable_message_provider(provider):
        raise BindingSpecError(f"Unknown provider in binding spec: {provider_part.strip() or raw}")
    account_id = account_part.strip() or None
    return AgentBinding(
        agent_id=normalize_agent_id(agent_id),
        match=BindingMatch(provider=provider, account_id=account_id),
    )
