"""codecall which — show which agent CLI binary would be launched."""

from __future__ import annotations

from pathlib import Path

import click

from codecall.agent.resolver import ExecutableResolver
from codecall.config.parser import ConfigError, load_config


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
def which(config_file: str | None) -> None:
    """Print the resolved agent CLI path (exit 1 if not found)."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    resolver = ExecutableResolver(override=config.agent_path)
    path = resolver.resolve()
    if path is None:
        click.echo("Agent CLI not found.", err=True)
        click.echo(f"Searched: {resolver.describe_search()}", err=True)
        raise SystemExit(1)
    click.echo(path)
