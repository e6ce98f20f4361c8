"""agentbridge init: scaffold an agentbridge.yaml in the current directory."""

from __future__ import annotations

from pathlib import Path

import click

from agentbridge.config.parser import DEFAULT_CONFIG_NAME

ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# Agent Bridge configuration

# Preferred backend: codex (app-server) or trae (tool server + CLI)
backend: codex

# Try the other backend when the preferred one is unavailable
fallback: true

# Directory the long-lived Codex process starts in (default: cwd)
# workspace_root: /path/to/project

# Record bridge events to ./sessions/*.jsonl
# record: true

codex:
  # binary_path: /usr/local/bin/codex
  # model: gpt-5-codex
  approval_policy: on-request
  sandbox: workspaceWrite
  # Decision sent for server requests the bridge does not recognise
  unknown_request_decision: approved

trae:
  # Root of the trae-agent checkout (holds .venv, trae_config.yaml, mcp_server.py)
  # agent_dir: /path/to/trae-agent
  use_tool_server: true
  inactivity_timeout: 300
  overall_timeout: 900
  # Let a trace marked successful override a non-zero exit code
  trust_trace_success: false
"""

TEMPLATE_ENV_EXAMPLE = """\
# Environment overrides for agentbridge.yaml.
# Copy this file to .env next to agentbridge.yaml.

# AGENTBRIDGE_BACKEND=trae
# AGENTBRIDGE_CODEX_PATH=
# AGENTBRIDGE_CODEX_MODEL=
# AGENTBRIDGE_TRAE_DIR=
# AGENTBRIDGE_TRAE_CLI_PATH=
# AGENTBRIDGE_DEBUG=1
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help=f"Overwrite existing {DEFAULT_CONFIG_NAME} if it exists.",
)
def init(force: bool) -> None:
    """Scaffold an agentbridge.yaml in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / DEFAULT_CONFIG_NAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{DEFAULT_CONFIG_NAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {DEFAULT_CONFIG_NAME}: {exc}") from exc
    click.echo(f"  Created {DEFAULT_CONFIG_NAME}")

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
    click.echo(f"  1. Edit {DEFAULT_CONFIG_NAME} to point at your agents")
    click.echo('  2. Run `agentbridge info` to check which backends are available')
    click.echo('  3. Run `agentbridge send "your task"` from your project directory')
