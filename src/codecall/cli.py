"""Root CLI group and version flag."""

import signal

import click

# Don't die on a closed stdout pipe (e.g. `codecall run ... | head`).
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from codecall import __version__
from codecall.commands.init import init
from codecall.commands.run import run
from codecall.commands.which import which


@click.group()
@click.version_option(version=__version__, prog_name="codecall")
def cli() -> None:
    """Codecall — run and arbitrate headless coding agents."""


cli.add_command(init)
cli.add_command(which)
cli.add_command(run)
