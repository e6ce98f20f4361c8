"""Root CLI group and version flag."""

import logging
import signal

import click

# Ensure SIGPIPE doesn't silently kill the process when stdout closes
# while click.echo is writing.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from agentbridge import __version__
from agentbridge.commands.info import info
from agentbridge.commands.init import init
from agentbridge.commands.send import send


@click.group()
@click.version_option(version=__version__, prog_name="agentbridge")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Agent Bridge: delegate coding tasks to Codex or Trae."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


cli.add_command(init)
cli.add_command(send)
cli.add_command(info)
