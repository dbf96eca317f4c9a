import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from relaybot import __version__
from relaybot.cli.commands import app
from relaybot.config.loader import load_config

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "agents": {"list": [{"id": "main", "default": True}, {"id": "ops"}]},
        "bindings": [
            {"agentId": "ops", "match": {"provider": "discord", "guildId": "g1"}},
            {"agentId": "ops", "match": {"provider": "telegram", "accountId": "*"}},
        ],
        "channels": {"telegram": {"enabled": True, "token": "t"}},
    }))
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"relaybot v{__version__}" in result.output


def test_route_reports_guild_binding(config_file):
    result = runner.invoke(app, [
        "route", "discord",
        "--peer-kind", "channel", "--peer-id", "C9",
        "--guild", "g1",
        "--config", str(config_file),
    ])

    assert result.exit_code == 0
    assert "agent: ops" in result.output
    assert "account: default" in result.output
    assert "session: agent:ops:discord:channel:c9" in result.output
    assert "main session: agent:ops:main" in result.output
    assert "matched by: binding.guild" in result.output


def test_route_falls_back_to_default_agent(config_file):
    result = runner.invoke(app, ["route", "slack", "--config", str(config_file)])

    assert result.exit_code == 0
    assert "agent: main" in result.output
    assert "session: agent:main:main" in result.output
    assert "matched by: default" in result.output


def test_bindings_list(config_file, tmp_path):
    result = runner.invoke(app, ["bindings", "list", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "ops <- discord guild=g1" in result.output
    assert "ops <- telegram accountId=*" in result.output

    empty = runner.invoke(app, ["bindings", "list", "--config", str(tmp_path / "missing.json")])
    assert empty.exit_code == 0
    assert "No bindings configured." in empty.output


def test_bindings_add_saves_new_bindings(config_file):
    result = runner.invoke(app, ["bindings", "add", "main", "slack", "whatsapp:biz", "--config", str(config_file)])

    assert result.exit_code == 0
    assert "Added: slack" in result.output
    assert "Added: whatsapp accountId=biz" in result.output
    cfg = load_config(config_file)
    assert [(b.agent_id, b.match.provider, b.match.account_id) for b in cfg.bindings[2:]] == [
        ("main", "slack", None),
        ("main", "whatsapp", "biz"),
    ]


def test_bindings_add_reports_conflicts(config_file):
    runner.invoke(app, ["bindings", "add", "ops", "slack", "--config", str(config_file)])

    again = runner.invoke(app, ["bindings", "add", "ops", "slack", "--config", str(config_file)])
    assert again.exit_code == 0
    assert "Already bound: slack" in again.output

    conflict = runner.invoke(app, ["bindings", "add", "main", "slack", "--config", str(config_file)])
    assert conflict.exit_code == 1
    assert "Conflict: slack is bound to ops" in conflict.output
    assert len(load_config(config_file).bindings) == 3


def test_bindings_add_rejects_unknown_provider(config_file):
    result = runner.invoke(app, ["bindings", "add", "main", "irc", "--config", str(config_file)])

    assert result.exit_code == 1
    assert "Error: Unknown provider in binding spec: irc" in result.output
    assert len(load_config(config_file).bindings) == 2


def test_bindings_remove(config_file):
    result = runner.invoke(app, ["bindings", "remove", "ops", "--config", str(config_file)])

    assert result.exit_code == 0
    assert "Removed 2 binding(s) for ops." in result.output
    assert load_config(config_file).bindings == []


def test_status(config_file):
    result = runner.invoke(app, ["status", "--config", str(config_file)])

    assert result.exit_code == 0
    assert f"Config: {config_file} ✓" in result.output
    assert "Default agent: main" in result.output
    assert "Agents: main, ops" in result.output
    assert "Bindings: 2" in result.output
    assert "Queue: mode=collect cap=20 drop=summarize" in result.output
    assert "telegram: enabled" in result.output
    assert "discord: disabled" in result.output
