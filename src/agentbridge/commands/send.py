"""agentbridge send: delegate one message to the configured agent."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import click

from agentbridge.bridge import AgentBridge
from agentbridge.config.models import BridgeConfig
from agentbridge.config.parser import ConfigError, load_config
from agentbridge.models import AgentResponse, ApprovalDecision, ApprovalRequest, Backend
from agentbridge.session.recorder import EndReason, SessionRecorder


def load_cli_config(config_file: str | None, backend: str | None) -> BridgeConfig:
    """Load config for a command, applying a ``--backend`` override."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc
    if backend:
        config = config.model_copy(update={"backend": Backend(backend)})
    return config


@click.command()
@click.argument("message")
@click.option(
    "--cwd",
    "working_directory",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory the agent works in (default: current directory).",
)
@click.option(
    "--backend",
    type=click.Choice([b.value for b in Backend]),
    default=None,
    help="Override the preferred backend.",
)
@click.option(
    "--session",
    "use_session",
    is_flag=True,
    help="Continue a waiting Trae session instead of a one-shot run.",
)
@click.option("-f", "--config", "config_file", type=click.Path(), help="Config file path.")
@click.option("-y", "--yes", "auto_approve", is_flag=True, help="Approve every command.")
def send(
    message: str,
    working_directory: str | None,
    backend: str | None,
    use_session: bool,
    config_file: str | None,
    auto_approve: bool,
) -> None:
    """Send MESSAGE to the agent and print its reply."""
    config = load_cli_config(config_file, backend)
    cwd = working_directory or os.getcwd()

    try:
        response = asyncio.run(
            _run_send(config, message, cwd, use_session=use_session, auto_approve=auto_approve)
        )
    except KeyboardInterrupt:
        click.echo("\nInterrupted.", err=True)
        raise SystemExit(130) from None

    print_response(response)
    if not response.success:
        raise SystemExit(1)


async def _run_send(
    config: BridgeConfig,
    message: str,
    working_directory: str,
    *,
    use_session: bool,
    auto_approve: bool,
) -> AgentResponse:
    recorder = (
        SessionRecorder(config.backend.value, Path(config.sessions_dir))
        if config.record
        else None
    )

    async def on_progress(text: str) -> None:
        click.echo(text, nl=False)

    async def on_status(text: str) -> None:
        click.echo(click.style(f"  [{text}]", dim=True), err=True)

    async def on_approval(request: ApprovalRequest) -> None:
        if request.implicit:
            click.echo(click.style(f"  ran: {request.command_line}", dim=True), err=True)
            return
        decision = await prompt_decision(request, auto_approve=auto_approve)
        await bridge.respond_to_approval(request.request_id, decision)

    bridge = AgentBridge(
        config, recorder=recorder, on_approval=on_approval, on_status=on_status
    )
    reason: EndReason = "complete"
    try:
        send_fn = bridge.send_message_session if use_session else bridge.send_message
        response = await send_fn(message, working_directory, on_progress)
        if not response.success:
            reason = "error"
        return response
    except asyncio.CancelledError:
        reason = "user_shutdown"
        await bridge.stop()
        raise
    finally:
        await bridge.dispose()
        if recorder is not None:
            recorder.end(reason)


async def prompt_decision(
    request: ApprovalRequest, *, auto_approve: bool
) -> ApprovalDecision:
    """Ask the user whether a proposed command may run."""
    if auto_approve:
        click.echo(f"  auto-approved: {request.command_line}", err=True)
        return ApprovalDecision.APPROVED

    click.echo(err=True)
    click.echo(f"  Agent wants to run: {request.command_line}", err=True)
    click.echo(f"  in: {request.cwd}", err=True)
    if request.reason:
        click.echo(f"  reason: {request.reason}", err=True)
    approved = await asyncio.to_thread(click.confirm, "  Allow?", default=False, err=True)
    return ApprovalDecision.APPROVED if approved else ApprovalDecision.DENIED


def print_response(response: AgentResponse) -> None:
    click.echo()
    if response.content:
        click.echo(response.content)
    if response.tool_calls:
        click.echo()
        click.echo("Tool calls:")
        for call in response.tool_calls:
            suffix = f" -> {call.result}" if call.result else ""
            click.echo(f"  {call.name}({call.parameters}){suffix}")
    if not response.success:
        click.echo(f"Error: {response.error}", err=True)
    backend = response.backend.value if response.backend else None
    source = " / ".join(part for part in (backend, response.mode) if part)
    if source:
        click.echo(click.style(f"  via {source}", dim=True), err=True)
