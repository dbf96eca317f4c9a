"""Canonical agent/account/session identifiers."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_AGENT_ID = "main"
DEFAULT_MAIN_KEY = "main"
DEFAULT_ACCOUNT_ID = "default"


@dataclass(frozen=True)
class ParsedAgentSessionKey:
    agent_id: str
    rest: str


def normalize_agent_id(value: str | None = None) -> str:
    """Trim an agent id, falling back to the reserved default id when blank."""
    trimmed = (value or "").strip()
    return trimmed or DEFAULT_AGENT_ID


def normalize_account_id(value: str | None = None) -> str:
    """Trim an account id, falling back to the default account when blank."""
    trimmed = (value or "").strip()
    return trimmed or DEFAULT_ACCOUNT_ID


def parse_agent_session_key(session_key: str | None) -> ParsedAgentSessionKey | None:
    """
    Parse an ``agent:<agentId>:<rest...>`` session key.

    Empty segments are ignored, so ``agent::main`` does not parse. Returns None
    when the key does not have the agent prefix; callers fall back to the
    default agent.
    """
    raw = (session_key or "").strip()
    if not raw:
        return None
    parts = [p for p in raw.split(":") if p]
    if len(parts) < 3 or parts[0] != "agent":
        return None
    agent_id = parts[1].strip()
    rest = ":".join(parts[2:])
    if not agent_id or not rest.strip():
        return None
    return ParsedAgentSessionKey(agent_id=agent_id, rest=rest)


def resolve_agent_id_from_session_key(session_key: str | None) -> str:
    parsed = parse_agent_session_key(session_key)
    return normalize_agent_id(parsed.agent_id if parsed else DEFAULT_AGENT_ID)


def is_subagent_session_key(session_key: str | None) -> bool:
    raw = (session_key or "").strip()
    if not raw:
        return False
    if raw.lower().startswith("subagent:"):
        return True
    parsed = parse_agent_session_key(raw)
    return bool(parsed and parsed.rest.lower().startswith("subagent:"))


def build_agent_main_session_key(agent_id: str | None, main_key: str | None = None) -> str:
    key = (main_key or "").strip() or DEFAULT_MAIN_KEY
    return f"agent:{normalize_agent_id(agent_id)}:{key}"


def build_agent_peer_session_key(
    agent_id: str | None,
    provider: str | None,
    peer_kind: str | None,
    peer_id: str | None,
    main_key: str | None = None,
) -> str:
    """
    Build the session key for a conversation peer.

    Direct messages share the agent's main session; groups and channels get a
    provider-qualified scope such as ``agent:ops:discord:channel:c1``.
    """
    kind = (peer_kind or "dm").strip().lower() or "dm"
    if kind == "dm":
        return build_agent_main_session_key(agent_id, main_key)
    provider_key = (provider or "").strip().lower() or "unknown"
    peer = (peer_id or "").strip() or "unknown"
    return f"agent:{normalize_agent_id(agent_id)}:{provider_key}:{kind}:{peer}"
