"""codecall init — scaffold a codecall.yaml in the current directory."""

from __future__ import annotations

from pathlib import Path

import click

CONFIG_FILENAME = "codecall.yaml"
ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# Codecall configuration

# Path to the agent CLI. Leave unset to search PATH and the usual
# install locations (~/.local/bin/cursor-agent, ...).
# agent_path: ~/.local/bin/cursor-agent

# Directory the agents work in (relative to this file). Default: cwd.
# working_directory: .

# Seconds without any output before an agent is reported as stuck.
watchdog_timeout: 10

# Ask each agent to finish with a one-line "SUMMARY:" for the voice layer.
summary_instruction: true

# Extra flags passed to the agent CLI before the prompt.
# extra_args: ["--model", "gpt-5"]

# Extra environment variables for agent processes.
# env:
#   NO_COLOR: "1"

# Fail fast when no API key is configured.
require_api_key: false

# Record every run to ./sessions/ as JSONL.
record: false
# sessions_dir: sessions
"""

TEMPLATE_ENV_EXAMPLE = """\
# API key for the agent CLI. Copy this file to .env and fill it in.
# Not needed if you have already run `cursor-agent login`.

CURSOR_API_KEY=

# Optional: pin the agent executable instead of searching for it.
# CODECALL_AGENT_PATH=
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing codecall.yaml if it exists.",
)
def init(force: bool) -> None:
    """Scaffold a codecall.yaml in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / CONFIG_FILENAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{CONFIG_FILENAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {CONFIG_FILENAME}: {exc}") from exc
    click.echo(f"  Created {CONFIG_FILENAME}")

    if not env_example_path.exists() or force:
        try:
            env_example_path.write_text(TEMPLATE_ENV_EXAMPLE, encoding="utf-8")
        except OSError as exc:
            raise click.ClickException(
                f"Cannot write {ENV_EXAMPLE_FILENAME}: {exc}"
            ) from exc
        click.echo(f"  Created {ENV_EXAMPLE_FILENAME}")
    else:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")

    click.echo()
    click.echo("Next steps:")
    click.echo("  1. Run `codecall which` to check the agent CLI is found")
    click.echo("  2. Copy .env.example to .env and add CURSOR_API_KEY if needed")
    click.echo('  3. Run `codecall run "your task"`')
