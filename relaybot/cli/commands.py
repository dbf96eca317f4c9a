"""CLI commands for relaybot."""

from __future__ import annotations

from pathlib import Path

import typer

from relaybot import __logo__, __version__
from relaybot.agent.scope import AgentScope, list_agents
from relaybot.config import loader
from relaybot.errors import BindingSpecError
from relaybot.routing.bindings import (
    apply_agent_bindings,
    describe_binding,
    parse_binding_spec,
    prune_agent_bindings,
)
from relaybot.routing.resolve_route import RoutePeer, resolve_agent_route

app = typer.Typer(
    name="relaybot",
    help=f"{__logo__} relaybot - multi-provider chat gateway",
    no_args_is_help=True,
)

bindings_app = typer.Typer(help="Manage agent bindings")
app.add_typer(bindings_app, name="bindings")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to config.json")


def version_callback(value: bool):
    if value:
        typer.echo(f"{__logo__} relaybot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """relaybot - multi-provider chat gateway."""


def _config_path(config: Path | None) -> Path:
    return config or loader.get_config_path()


@app.command()
def route(
    provider: str = typer.Argument(..., help="Provider id, e.g. telegram"),
    account: str = typer.Option(None, "--account", "-a", help="Provider account id"),
    peer_kind: str = typer.Option(None, "--peer-kind", help="dm, group or channel"),
    peer_id: str = typer.Option(None, "--peer-id", help="Peer id (chat, group or channel)"),
    guild: str = typer.Option(None, "--guild", help="Discord guild id"),
    team: str = typer.Option(None, "--team", help="MS Teams team id"),
    config: Path = ConfigOption,
):
    """Show which agent and session an inbound message would be routed to."""
    cfg = loader.load_config(_config_path(config))
    peer = RoutePeer(kind=peer_kind, id=peer_id) if peer_kind and peer_id else None
    resolved = resolve_agent_route(
        cfg,
        provider,
        account_id=account,
        peer=peer,
        guild_id=guild,
        team_id=team,
    )
    typer.echo(f"agent: {resolved.agent_id}")
    typer.echo(f"account: {resolved.account_id}")
    typer.echo(f"session: {resolved.session_key}")
    typer.echo(f"main session: {resolved.main_session_key}")
    typer.echo(f"matched by: {resolved.matched_by}")


@bindings_app.command("list")
def bindings_list(config: Path = ConfigOption):
    """List configured bindings in priority order."""
    cfg = loader.load_config(_config_path(config))
    if not cfg.bindings:
        typer.echo("No bindings configured.")
        return
    for binding in cfg.bindings:
        typer.echo(f"{binding.agent_id} <- {describe_binding(binding)}")


@bindings_app.command("add")
def bindings_add(
    agent: str = typer.Argument(..., help="Agent id"),
    specs: list[str] = typer.Argument(..., help="provider[:accountId] specs"),
    config: Path = ConfigOption,
):
    """Bind one or more provider[:accountId] specs to an agent."""
    path = _config_path(config)
    cfg = loader.load_config(path)
    try:
        parsed = [parse_binding_spec(agent, spec) for spec in specs]
    except BindingSpecError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    result = apply_agent_bindings(cfg, parsed)
    for binding in result.added:
        typer.echo(f"Added: {describe_binding(binding)}")
    for binding in result.skipped:
        typer.echo(f"Already bound: {describe_binding(binding)}")
    for conflict in result.conflicts:
        typer.echo(
            f"Conflict: {describe_binding(conflict.binding)} is bound to {conflict.existing_agent_id}",
            err=True,
        )
    if result.added:
        loader.save_config(result.config, path)
    if result.conflicts:
        raise typer.Exit(1)


@bindings_app.command("remove")
def bindings_remove(
    agent: str = typer.Argument(..., help="Agent id"),
    config: Path = ConfigOption,
):
    """Remove every binding that points at an agent."""
    path = _config_path(config)
    cfg, removed = prune_agent_bindings(loader.load_config(path), agent)
    if removed:
        loader.save_config(cfg, path)
    typer.echo(f"Removed {removed} binding(s) for {agent}.")


@app.command()
def status(config: Path = ConfigOption):
    """Show configuration status."""
    path = _config_path(config)
    cfg = loader.load_config(path)

    typer.echo(f"{__logo__} relaybot Status\n")
    typer.echo(f"Config: {path} {'✓' if path.exists() else '✗'}")
    agents = list_agents(cfg)
    default_agent = AgentScope().resolve_default_agent_id(cfg)
    typer.echo(f"Default agent: {default_agent}")
    typer.echo(f"Agents: {', '.join(a.id for a in agents) if agents else '(none)'}")
    typer.echo(f"Bindings: {len(cfg.bindings)}")
    queue = cfg.messages.queue
    typer.echo(f"Queue: mode={queue.mode or 'collect'} cap={queue.cap or 20} drop={queue.drop or 'summarize'}")

    for name in ("whatsapp", "telegram", "discord", "slack", "signal", "imessage", "msteams"):
        channel = cfg.channels.get(name)
        typer.echo(f"{name}: {'enabled' if channel and channel.enabled else 'disabled'}")


if __name__ == "__main__":
    app()
