"""Trae agent backend: MCP tool server first, one-shot CLI as fallback."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from agentbridge.config.models import TraeSettings
from agentbridge.constants import (
    TRAE_CLI_PATH_ENV,
    UTF8_ENV,
    ApprovalCallback,
    ProgressCallback,
)
from agentbridge.errors import BridgeError, SpawnError
from agentbridge.models import (
    AgentResponse,
    ApprovalKind,
    ApprovalRequest,
    Backend,
    ToolCall,
)
from agentbridge.process.launcher import (
    ResolvedExecutable,
    probe,
    resolve_executable,
    spawn,
    terminate,
    venv_executable,
)
from agentbridge.session.models import ApprovalRequestedEvent, ToolCallEvent
from agentbridge.session.recorder import SessionRecorder
from agentbridge.trae.cli_executor import CLIExecutor
from agentbridge.trae.sanitize import sanitize_output
from agentbridge.trae.tool_client import ToolSessionClient

logger = logging.getLogger(__name__)

MCP_MODE = "mcp"

#: Session states in which the remote agent waits for an observation.
_WAITING_STATES = frozenset({"waiting", "waiting_for_observation"})

#: Tool names whose calls are surfaced as implicit command approvals.
_COMMAND_TOOLS = frozenset({"bash"})

_SHOW_CONFIG_TIMEOUT = 30.0


def resolve_trae_cli(settings: TraeSettings) -> ResolvedExecutable:
    """Resolve trae-cli: explicit, env var, the agent's venv, then ``PATH``."""

    def from_venv() -> str | None:
        candidate = venv_executable(settings.root / ".venv", "trae-cli")
        return str(candidate) if candidate.is_file() else None

    return resolve_executable(
        "trae-cli",
        override=settings.cli_path,
        env_var=TRAE_CLI_PATH_ENV,
        bundled=from_venv,
    )


class TraeAgent:
    """Delegates messages to the Trae agent.

    Each message goes to the tool server's run tool when it is reachable
    and returns text; otherwise a one-shot ``trae-cli run`` handles it.
    The CLI path always produces a response.
    """

    def __init__(
        self,
        settings: TraeSettings | None = None,
        *,
        recorder: SessionRecorder | None = None,
        on_approval: ApprovalCallback | None = None,
        executable: ResolvedExecutable | None = None,
        tool_client: ToolSessionClient | None = None,
        cli_executor: CLIExecutor | None = None,
    ) -> None:
        self._settings = settings or TraeSettings()
        self._recorder = recorder
        self._on_approval = on_approval
        self._executable = executable or resolve_trae_cli(self._settings)
        self._tools = tool_client or ToolSessionClient(self._settings, recorder=recorder)
        self._cli = cli_executor or CLIExecutor(
            self._settings, self._executable, recorder=recorder
        )
        self._available: bool | None = None
        self._probe_lock = asyncio.Lock()
        logger.debug(
            "trae: cli path = %s (source=%s)", self._executable.path, self._executable.source
        )

    @property
    def executable(self) -> ResolvedExecutable:
        return self._executable

    @property
    def settings(self) -> TraeSettings:
        return self._settings

    @property
    def tool_client(self) -> ToolSessionClient:
        return self._tools

    async def is_available(self) -> bool:
        """Probe ``trae-cli --help`` once and cache the answer."""
        async with self._probe_lock:
            if self._available is None:
                self._available = await self._probe()
            return self._available

    def reset_availability(self) -> None:
        self._available = None

    async def _probe(self) -> bool:
        if self._settings.agent_dir and not self._settings.root.is_dir():
            logger.warning("trae: agent directory not found: %s", self._settings.root)
            return False
        cwd = self._settings.root if self._settings.root.is_dir() else None
        available = await probe(self._executable, ["--help"], cwd=cwd)
        if available:
            logger.info("trae: agent available (%s)", self._executable.path)
        else:
            logger.warning("trae: agent is not properly installed or configured")
        return available

    # ------------------------------------------------------------------ #
    # Messaging
    # ------------------------------------------------------------------ #

    async def execute(
        self,
        message: str,
        working_directory: str,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResponse:
        """Run *message* through the run tool, falling back to the CLI."""
        if self._settings.use_tool_server:
            await _notify(on_progress, "Connecting to Trae tool server...\n")
            try:
                if await self._tools.connect():
                    text = await self._tools.call_tool(
                        self._settings.run_tool,
                        {"message": message, "working_directory": working_directory},
                        timeout=self._settings.call_timeout,
                    )
                    return self._mcp_response(text)
                reason = self._tools.last_error or "tool server unavailable"
            except BridgeError as exc:
                reason = str(exc)
            await _notify(on_progress, f"Tool server call failed, falling back to CLI: {reason}\n")
            logger.warning("trae: falling back to CLI: %s", reason)

        return await self._run_cli(message, working_directory, on_progress)

    async def execute_session(
        self,
        message: str,
        working_directory: str,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResponse:
        """Continue a waiting remote session, or start a new one.

        Uses the status tool to find a session in *working_directory*
        that is waiting for an observation.  Falls back to ``execute``
        when the server lacks the session tools, and to the CLI when the
        server is unusable.
        """
        if not self._settings.use_tool_server:
            return await self._run_cli(message, working_directory, on_progress)

        try:
            if not await self._tools.connect():
                reason = self._tools.last_error or "tool server unavailable"
            elif not self._has_session_tools():
                logger.info("trae: tool server has no session tools, using run tool")
                return await self.execute(message, working_directory, on_progress)
            else:
                session_id = await self._waiting_session(working_directory)
                if session_id is not None:
                    logger.info("trae: submitting observation to session %s", session_id)
                    text = await self._tools.call_tool(
                        self._settings.observation_tool,
                        {"session_id": session_id, "observation": message},
                        timeout=self._settings.call_timeout,
                    )
                else:
                    text = await self._tools.call_tool(
                        self._settings.start_tool,
                        {"message": message, "working_directory": working_directory},
                        timeout=self._settings.call_timeout,
                    )
                return self._mcp_response(text)
        except BridgeError as exc:
            reason = str(exc)

        await _notify(on_progress, f"Tool server session failed, falling back to CLI: {reason}\n")
        logger.warning("trae: session falling back to CLI: %s", reason)
        return await self._run_cli(message, working_directory, on_progress)

    def _has_session_tools(self) -> bool:
        needed = {
            self._settings.status_tool,
            self._settings.start_tool,
            self._settings.observation_tool,
        }
        return needed <= self._tools.tools

    async def _waiting_session(self, working_directory: str) -> str | None:
        try:
            text = await self._tools.call_tool(
                self._settings.status_tool,
                {"working_directory": working_directory},
                timeout=self._settings.connect_timeout,
            )
        except BridgeError as exc:
            logger.warning("trae: session status lookup failed: %s", exc)
            return None
        return parse_waiting_session(text)

    def _mcp_response(self, text: str) -> AgentResponse:
        return AgentResponse(success=True, content=text, mode=MCP_MODE, backend=Backend.TRAE)

    async def _run_cli(
        self,
        message: str,
        working_directory: str,
        on_progress: ProgressCallback | None,
    ) -> AgentResponse:
        response = await self._cli.run(message, working_directory, on_progress)
        for index, call in enumerate(response.tool_calls or [], start=1):
            self._record_tool_call(call)
            if call.name in _COMMAND_TOOLS:
                await self._emit_implicit_approval(call, index, working_directory)
        return response

    def _record_tool_call(self, call: ToolCall) -> None:
        if self._recorder is None:
            return
        self._recorder.record(
            ToolCallEvent(
                ts="",
                seq=0,
                backend=Backend.TRAE.value,
                tool=call.name,
                args=call.parameters,
                result_size=len(call.result or ""),
            )
        )

    async def _emit_implicit_approval(
        self, call: ToolCall, index: int, working_directory: str
    ) -> None:
        request = ApprovalRequest(
            request_id=call.call_id or f"cli-{index}",
            command=[_command_of(call.parameters)],
            cwd=working_directory,
            kind=ApprovalKind.COMMAND,
            implicit=True,
        )
        if self._recorder is not None:
            self._recorder.record(
                ApprovalRequestedEvent(
                    ts="",
                    seq=0,
                    request_id=request.request_id,
                    command=request.command,
                    cwd=request.cwd,
                    kind=request.kind.value,
                    implicit=True,
                )
            )
        if self._on_approval is None:
            return
        try:
            await self._on_approval(request)
        except Exception as exc:
            logger.warning("trae: approval handler failed: %s", exc)

    # ------------------------------------------------------------------ #
    # Info / lifecycle
    # ------------------------------------------------------------------ #

    async def get_info(self) -> str:
        """Agent configuration text from the info tool or ``show-config``."""
        if not await self.is_available():
            return "Trae agent is not available"

        if self._settings.use_tool_server:
            try:
                if (
                    await self._tools.connect()
                    and self._settings.info_tool in self._tools.tools
                ):
                    text = await self._tools.call_tool(
                        self._settings.info_tool, {}, timeout=self._settings.connect_timeout
                    )
                    return text.strip()
            except BridgeError as exc:
                logger.debug("trae: info tool failed, using show-config: %s", exc)

        return await self._show_config()

    async def _show_config(self) -> str:
        args = ["show-config", "--config-file", str(self._settings.resolved_config_file)]
        try:
            proc = await spawn(
                self._executable, args, env=UTF8_ENV, stdin=asyncio.subprocess.DEVNULL
            )
        except SpawnError as exc:
            return f"Error getting agent info: {exc}"
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=_SHOW_CONFIG_TIMEOUT
            )
        except TimeoutError:
            await terminate(proc)
            return "Error getting agent info: show-config timed out"
        if proc.returncode == 0:
            return sanitize_output(stdout.decode(errors="replace")).strip()
        detail = sanitize_output(stderr.decode(errors="replace")).strip()
        return f"Failed to get agent info: {detail or 'Unknown error'}"

    async def stop(self) -> None:
        """Terminate the running CLI process, if any."""
        await self._cli.stop()

    async def dispose(self) -> None:
        await self._cli.stop()
        await self._tools.close()


def parse_waiting_session(text: str) -> str | None:
    """Return the session id from a status reply that is waiting for input."""
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    session_id = data.get("session_id")
    if data.get("status") in _WAITING_STATES and session_id:
        return str(session_id)
    return None


def _command_of(parameters: Any) -> str:
    if isinstance(parameters, dict):
        command = parameters.get("command")
        if command is not None:
            return str(command)
        return json.dumps(parameters)
    return str(parameters)


async def _notify(on_progress: ProgressCallback | None, text: str) -> None:
    if on_progress is None:
        return
    try:
        await on_progress(text)
    except Exception as exc:
        logger.warning("trae: progress callback failed: %s", exc)
