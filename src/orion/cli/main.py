"""Click CLI group: ask, tools, and check-config commands."""

import asyncio

import click

from orion.cli.chat import ask_once, default_cli_user, discover_tools, format_reply, format_tools
from orion.config import get_settings, validate_settings_for_env
from orion.errors import ConfigError
from orion.events.writer import MemoryEventSink
from orion.logging import configure_logging
from orion.tools.config import load_tool_servers


@click.group()
def cli() -> None:
    """Orion agent CLI."""


@cli.command()
@click.argument("message")
@click.option("--user-id", default=None, help="User id for stored preferences.")
@click.option(
    "--research/--no-research",
    default=True,
    help="Expose the parallel research tool to the model.",
)
@click.option("--json", "json_output", is_flag=True, help="Print JSON output.")
@click.option("--trace", is_flag=True, help="Include emitted events in JSON output.")
def ask(
    message: str,
    user_id: str | None,
    research: bool,
    json_output: bool,
    trace: bool,
) -> None:
    """Send one message to the agent and print the reply."""
    settings = get_settings()
    configure_logging(settings.log_level)
    sink = MemoryEventSink() if trace else None
    try:
        reply = asyncio.run(
            ask_once(
                message,
                user_id=user_id or default_cli_user(),
                research=research,
                sink=sink,
            )
        )
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    events = sink.events if sink is not None else None
    click.echo(format_reply(reply, json_output=json_output or trace, events=events))


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Print JSON output.")
def tools(json_output: bool) -> None:
    """Connect to every configured tool server and list its tools."""
    configure_logging(get_settings().log_level)
    try:
        listing = asyncio.run(discover_tools())
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(format_tools(listing, json_output=json_output))


@cli.command("check-config")
def check_config() -> None:
    """Validate settings and the tool server file without connecting."""
    settings = get_settings()
    try:
        validate_settings_for_env(settings)
        servers = load_tool_servers(settings.tool_servers_config)
    except (ValueError, ConfigError) as exc:
        raise click.ClickException(str(exc)) from exc
    enabled = servers.enabled()
    click.echo(f"environment: {settings.app_env}")
    click.echo(f"primary provider: {settings.primary_provider}")
    click.echo(f"tool servers: {', '.join(sorted(enabled)) or '(none)'}")
    click.echo("configuration ok")


if __name__ == "__main__":
    cli()
