"""agentbridge info: show which backends are configured and usable."""

from __future__ import annotations

import asyncio
from typing import Any

import click

from agentbridge.bridge import AgentBridge
from agentbridge.commands.send import load_cli_config
from agentbridge.config.models import BridgeConfig
from agentbridge.models import Backend


@click.command()
@click.option(
    "--backend",
    type=click.Choice([b.value for b in Backend]),
    default=None,
    help="Override the preferred backend.",
)
@click.option("-f", "--config", "config_file", type=click.Path(), help="Config file path.")
def info(backend: str | None, config_file: str | None) -> None:
    """Show backend availability and resolved paths."""
    config = load_cli_config(config_file, backend)
    details = asyncio.run(_collect(config))

    click.echo(f"  Preferred backend: {details['backend']}")
    click.echo(f"  Fallback:          {'on' if details['fallback'] else 'off'}")
    for name in (Backend.CODEX.value, Backend.TRAE.value):
        section: dict[str, Any] = details[name]
        status = "available" if section["available"] else "unavailable"
        click.echo()
        click.echo(f"  {name}: {status}")
        click.echo(f"    path: {section['path']} ({section['source']})")
        if name == Backend.TRAE.value:
            click.echo(f"    agent dir: {section['agent_dir']}")
            click.echo(f"    config:    {section['config_file']}")
            if section.get("config"):
                click.echo()
                for line in str(section["config"]).splitlines():
                    click.echo(f"    {line}")


async def _collect(config: BridgeConfig) -> dict[str, Any]:
    bridge = AgentBridge(config)
    try:
        return await bridge.get_info()
    finally:
        await bridge.dispose()
