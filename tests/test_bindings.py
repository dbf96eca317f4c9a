import pytest

from relaybot.config.schema import AgentBinding, BindingMatch, Config, PeerMatch
from relaybot.errors import BindingSpecError, ConfigurationError
from relaybot.routing.bindings import (
    apply_agent_bindings,
    binding_match_key,
    describe_binding,
    parse_binding_spec,
    prune_agent_bindings,
)


def _binding(agent_id: str, provider: str, account_id: str | None = None) -> AgentBinding:
    return AgentBinding(agent_id=agent_id, match=BindingMatch(provider=provider, account_id=account_id))


def test_match_key_treats_missing_account_as_default():
    assert binding_match_key(BindingMatch(provider="slack")) == binding_match_key(
        BindingMatch(provider="slack", account_id="default")
    )
    key = binding_match_key(BindingMatch(provider="discord", peer=PeerMatch(kind="channel", id="c1"), guild_id="g1"))
    assert key == "discord|default|channel|c1|g1|"


def test_apply_adds_skips_and_reports_conflicts():
    cfg = Config(bindings=[_binding("work", "slack")])

    result = apply_agent_bindings(cfg, [
        _binding("work", "slack", "default"),
        _binding("home", "slack"),
        _binding("home", "telegram"),
    ])

    assert [describe_binding(b) for b in result.added] == ["telegram"]
    assert len(result.skipped) == 1
    assert len(result.conflicts) == 1
    assert result.conflicts[0].existing_agent_id == "work"
    assert [b.agent_id for b in result.config.bindings] == ["work", "home"]
    # input config untouched
    assert len(cfg.bindings) == 1


def test_match_key_normalizes_provider_and_trims_ids():
    mixed = BindingMatch(provider=" Slack", peer=PeerMatch(kind="channel", id=" c1"))
    plain = BindingMatch(provider="slack", peer=PeerMatch(kind="channel", id="c1"))
    assert binding_match_key(mixed) == binding_match_key(plain)
    assert binding_match_key(BindingMatch(provider="teams")) == binding_match_key(BindingMatch(provider="msteams"))


def test_apply_reports_conflict_across_provider_case():
    cfg = Config(bindings=[_binding("ops", "Slack")])

    result = apply_agent_bindings(cfg, [_binding("main", "slack")])

    assert result.added == []
    assert len(result.conflicts) == 1
    assert result.conflicts[0].existing_agent_id == "ops"
    assert result.config is cfg


def test_apply_first_registration_wins_within_one_batch():
    result = apply_agent_bindings(Config(), [_binding("a", "signal"), _binding("b", "signal")])

    assert [b.agent_id for b in result.config.bindings] == ["a"]
    assert result.conflicts[0].existing_agent_id == "a"


def test_apply_without_additions_returns_same_config():
    cfg = Config(bindings=[_binding("work", "slack")])
    result = apply_agent_bindings(cfg, [_binding("work", "slack")])
    assert result.config is cfg


def test_prune_removes_bindings_for_agent():
    cfg = Config(bindings=[_binding("work", "slack"), _binding("home", "telegram"), _binding(" work ", "signal")])

    pruned, removed = prune_agent_bindings(cfg, "work")

    assert removed == 2
    assert [b.agent_id for b in pruned.bindings] == ["home"]
    assert prune_agent_bindings(pruned, "nobody") == (pruned, 0)


def test_describe_binding_lists_constraints():
    binding = AgentBinding(
        agent_id="ops",
        match=BindingMatch(provider="discord", account_id="*", peer=PeerMatch(kind="channel", id="c1"), guild_id="g1"),
    )
    assert describe_binding(binding) == "discord accountId=* peer=channel:c1 guild=g1"


def test_parse_binding_spec():
    binding = parse_binding_spec("ops", "Teams:corp")
    assert binding.agent_id == "ops"
    assert binding.match.provider == "msteams"
    assert binding.match.account_id == "corp"
    assert parse_binding_spec("ops", "telegram").match.account_id is None


@pytest.mark.parametrize("spec", ["", "   ", "irc", "webchat:foo"])
def test_parse_binding_spec_rejects_bad_specs(spec):
    with pytest.raises(BindingSpecError) as exc:
        parse_binding_spec("ops", spec)
    assert isinstance(exc.value, ConfigurationError)
