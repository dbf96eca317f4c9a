"""Resolve which agent owns an inbound conversation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from relaybot.agent.scope import AgentScope
from relaybot.config.schema import AgentBinding, BindingMatch, Config
from relaybot.routing.session_key import (
    DEFAULT_ACCOUNT_ID,
    build_agent_main_session_key,
    build_agent_peer_session_key,
    normalize_account_id,
)

MatchedBy = Literal[
    "binding.peer",
    "binding.guild",
    "binding.team",
    "binding.account",
    "binding.provider",
    "default",
]


@dataclass(frozen=True)
class RoutePeer:
    kind: str
    id: str


@dataclass(frozen=True)
class Route:
    agent_id: str
    provider: str
    account_id: str
    session_key: str
    main_session_key: str
    matched_by: MatchedBy


def _normalize_token(value: str | None) -> str:
    return (value or "").strip().lower()


def _normalize_id(value: str | int | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _matches_account_id(match: str | None, actual: str) -> bool:
    trimmed = (match or "").strip()
    if not trimmed:
        return actual == DEFAULT_ACCOUNT_ID
    if trimmed == "*":
        return True
    return trimmed == actual


def _matches_peer(match: BindingMatch, peer: RoutePeer) -> bool:
    if match.peer is None:
        return False
    kind = _normalize_token(match.peer.kind)
    peer_id = _normalize_id(match.peer.id)
    if not kind or not peer_id:
        return False
    return kind == peer.kind and peer_id == peer.id


def _is_wildcard(match: BindingMatch) -> bool:
    return (match.account_id or "").strip() == "*"


def _is_unscoped(match: BindingMatch) -> bool:
    return match.peer is None and not match.guild_id and not match.team_id


def _first(bindings: list[AgentBinding], predicate) -> AgentBinding | None:
    return next((b for b in bindings if predicate(b.match)), None)


def resolve_agent_route(
    cfg: Config,
    provider: str,
    account_id: str | None = None,
    peer: RoutePeer | dict | None = None,
    guild_id: str | int | None = None,
    team_id: str | int | None = None,
    scope: AgentScope | None = None,
) -> Route:
    """
    Pick the agent for an inbound event.

    Tiers, first match wins, each scanned in binding declaration order:
    peer, guild, team, explicit account, provider wildcard (``accountId: "*"``),
    then the configured default agent. A binding without accountId only matches
    the default account. Never raises.
    """
    scope = scope or AgentScope()
    provider_key = _normalize_token(provider)
    account = normalize_account_id(account_id)
    if isinstance(peer, dict):
        peer = RoutePeer(kind=str(peer.get("kind") or ""), id=str(peer.get("id") or ""))
    event_peer = RoutePeer(kind=_normalize_token(peer.kind), id=_normalize_id(peer.id)) if peer else None
    guild = _normalize_id(guild_id)
    team = _normalize_id(team_id)

    candidates = [
        b for b in cfg.bindings
        if _normalize_token(b.match.provider) == provider_key
        and _matches_account_id(b.match.account_id, account)
    ]

    def choose(agent_id: str, matched_by: MatchedBy) -> Route:
        resolved = scope.pick_existing_agent_id(cfg, agent_id)
        session_key = build_agent_peer_session_key(
            resolved,
            provider_key,
            event_peer.kind if event_peer else None,
            event_peer.id if event_peer else None,
        ).lower()
        return Route(
            agent_id=resolved,
            provider=provider_key,
            account_id=account,
            session_key=session_key,
            main_session_key=build_agent_main_session_key(resolved).lower(),
            matched_by=matched_by,
        )

    if event_peer:
        hit = _first(candidates, lambda m: _matches_peer(m, event_peer))
        if hit:
            return choose(hit.agent_id, "binding.peer")

    if guild:
        hit = _first(candidates, lambda m: _normalize_id(m.guild_id) == guild)
        if hit:
            return choose(hit.agent_id, "binding.guild")

    if team:
        hit = _first(candidates, lambda m: _normalize_id(m.team_id) == team)
        if hit:
            return choose(hit.agent_id, "binding.team")

    hit = _first(candidates, lambda m: not _is_wildcard(m) and _is_unscoped(m))
    if hit:
        return choose(hit.agent_id, "binding.account")

    hit = _first(candidates, lambda m: _is_wildcard(m) and _is_unscoped(m))
    if hit:
        return choose(hit.agent_id, "binding.provider")

    return choose(scope.resolve_default_agent_id(cfg), "default")
