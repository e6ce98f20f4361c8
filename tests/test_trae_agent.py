"""Tests for the Trae agent backend (tool server first, CLI fallback)."""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentbridge.config.models import TraeSettings
from agentbridge.constants import TRAE_CLI_PATH_ENV
from agentbridge.errors import BridgeTimeoutError, ToolCallError
from agentbridge.models import AgentResponse, ApprovalRequest, Backend, ToolCall
from agentbridge.process.launcher import ResolvedExecutable
from agentbridge.session.recorder import SessionRecorder
from agentbridge.trae.agent import TraeAgent, parse_waiting_session, resolve_trae_cli
from agentbridge.trae.cli_executor import CLIExecutor
from agentbridge.trae.tool_client import ToolSessionClient

SESSION_TOOLS = frozenset(
    {"run_trae_agent", "get_session_status", "start_session", "submit_observation"}
)

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def make_tools(
    *, connected: bool = True, tools: frozenset[str] = frozenset({"run_trae_agent"})
) -> MagicMock:
    client = MagicMock(spec=ToolSessionClient)
    client.connect.return_value = connected
    client.tools = tools
    client.last_error = None if connected else "server script missing"
    return client


def make_cli(response: AgentResponse | None = None) -> MagicMock:
    cli = MagicMock(spec=CLIExecutor)
    cli.run.return_value = response or AgentResponse(
        success=True, content="cli result", mode="cli", backend=Backend.TRAE
    )
    return cli


def make_agent(
    tmp_path: Path,
    *,
    tools: MagicMock | None = None,
    cli: MagicMock | None = None,
    **kwargs: Any,
) -> TraeAgent:
    settings = kwargs.pop("settings", None) or TraeSettings(agent_dir=str(tmp_path))
    return TraeAgent(
        settings,
        executable=kwargs.pop("executable", ResolvedExecutable("trae-cli")),
        tool_client=tools or make_tools(),
        cli_executor=cli or make_cli(),
        **kwargs,
    )


class ProgressLog:
    def __init__(self) -> None:
        self.chunks: list[str] = []

    async def __call__(self, text: str) -> None:
        self.chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


# ------------------------------------------------------------------ #
# execute
# ------------------------------------------------------------------ #


class TestExecute:
    async def test_tool_server_success(self, tmp_path: Path) -> None:
        tools = make_tools()
        tools.call_tool.return_value = "Refactored utils.py"
        cli = make_cli()
        agent = make_agent(tmp_path, tools=tools, cli=cli)

        response = await agent.execute("refactor", "/work")

        assert response.success
        assert response.content == "Refactored utils.py"
        assert response.mode == "mcp"
        assert response.backend is Backend.TRAE
        tools.call_tool.assert_awaited_once_with(
            "run_trae_agent",
            {"message": "refactor", "working_directory": "/work"},
            timeout=900.0,
        )
        cli.run.assert_not_called()

    async def test_falls_back_when_server_unreachable(self, tmp_path: Path) -> None:
        tools = make_tools(connected=False)
        cli = make_cli()
        progress = ProgressLog()
        agent = make_agent(tmp_path, tools=tools, cli=cli)

        response = await agent.execute("hi", "/work", progress)

        assert response.content == "cli result"
        cli.run.assert_awaited_once_with("hi", "/work", progress)
        assert "falling back to CLI: server script missing" in progress.text

    @pytest.mark.parametrize(
        "error",
        [ToolCallError("Tool failed"), BridgeTimeoutError("Tool did not return")],
    )
    async def test_falls_back_on_call_failure(self, tmp_path: Path, error: Exception) -> None:
        tools = make_tools()
        tools.call_tool.side_effect = error
        cli = make_cli()
        agent = make_agent(tmp_path, tools=tools, cli=cli)

        response = await agent.execute("hi", "/work")

        assert response.mode == "cli"
        cli.run.assert_awaited_once()

    async def test_tool_server_disabled(self, tmp_path: Path) -> None:
        tools = make_tools()
        cli = make_cli()
        settings = TraeSettings(agent_dir=str(tmp_path), use_tool_server=False)
        agent = make_agent(tmp_path, tools=tools, cli=cli, settings=settings)

        await agent.execute("hi", "/work")

        tools.connect.assert_not_called()
        cli.run.assert_awaited_once()


# ------------------------------------------------------------------ #
# CLI tool calls
# ------------------------------------------------------------------ #


class TestCliToolCalls:
    async def test_bash_calls_become_implicit_approvals(self, tmp_path: Path) -> None:
        calls = [
            ToolCall(name="bash", parameters={"command": "pytest -q"}, call_id="c1"),
            ToolCall(name="str_replace_based_edit_tool", parameters={"path": "a.py"}),
            ToolCall(name="bash", parameters="ls -la", result="Executed"),
        ]
        cli = make_cli(
            AgentResponse(
                success=True, content="ok", tool_calls=calls, mode="cli", backend=Backend.TRAE
            )
        )
        received: list[ApprovalRequest] = []

        async def on_approval(request: ApprovalRequest) -> None:
            received.append(request)

        recorder = SessionRecorder("trae", sessions_dir=tmp_path / "sessions")
        agent = make_agent(
            tmp_path,
            tools=make_tools(connected=False),
            cli=cli,
            recorder=recorder,
            on_approval=on_approval,
        )

        await agent.execute("run tests", "/work")
        recorder.close()

        assert [(r.request_id, r.command, r.cwd) for r in received] == [
            ("c1", ["pytest -q"], "/work"),
            ("cli-3", ["ls -la"], "/work"),
        ]
        assert all(r.implicit for r in received)

        events = [
            json.loads(line) for line in recorder.session_file.read_text().splitlines()
        ]
        tool_events = [e for e in events if e["type"] == "tool_call"]
        assert [e["tool"] for e in tool_events] == [
            "bash",
            "str_replace_based_edit_tool",
            "bash",
        ]
        assert tool_events[2]["result_size"] == len("Executed")
        approvals = [e for e in events if e["type"] == "approval_requested"]
        assert [a["implicit"] for a in approvals] == [True, True]

    async def test_failing_approval_handler_ignored(self, tmp_path: Path) -> None:
        cli = make_cli(
            AgentResponse(
                success=True,
                content="ok",
                tool_calls=[ToolCall(name="bash", parameters={"command": "ls"})],
                mode="cli",
                backend=Backend.TRAE,
            )
        )

        async def on_approval(request: ApprovalRequest) -> None:
            raise RuntimeError("renderer crashed")

        agent = make_agent(
            tmp_path, tools=make_tools(connected=False), cli=cli, on_approval=on_approval
        )
        response = await agent.execute("hi", "/work")
        assert response.success


# ------------------------------------------------------------------ #
# execute_session
# ------------------------------------------------------------------ #


class TestExecuteSession:
    def _tools_with_status(self, status: dict[str, Any]) -> MagicMock:
        tools = make_tools(tools=SESSION_TOOLS)

        async def call_tool(name: str, arguments: dict[str, Any], timeout: float) -> str:
            if name == "get_session_status":
                return json.dumps(status)
            return f"{name} reply"

        tools.call_tool.side_effect = call_tool
        return tools

    async def test_submits_observation_to_waiting_session(self, tmp_path: Path) -> None:
        tools = self._tools_with_status({"status": "waiting_for_observation", "session_id": "s-9"})
        agent = make_agent(tmp_path, tools=tools)

        response = await agent.execute_session("looks good, continue", "/work")

        assert response.content == "submit_observation reply"
        assert response.mode == "mcp"
        names = [c.args[0] for c in tools.call_tool.await_args_list]
        assert names == ["get_session_status", "submit_observation"]
        assert tools.call_tool.await_args_list[1].args[1] == {
            "session_id": "s-9",
            "observation": "looks good, continue",
        }

    async def test_starts_new_session_when_none_waiting(self, tmp_path: Path) -> None:
        tools = self._tools_with_status({"status": "completed", "session_id": "s-1"})
        agent = make_agent(tmp_path, tools=tools)

        response = await agent.execute_session("new task", "/work")

        assert response.content == "start_session reply"
        assert tools.call_tool.await_args_list[1].args[1] == {
            "message": "new task",
            "working_directory": "/work",
        }

    async def test_status_failure_starts_new_session(self, tmp_path: Path) -> None:
        tools = make_tools(tools=SESSION_TOOLS)

        async def call_tool(name: str, arguments: dict[str, Any], timeout: float) -> str:
            if name == "get_session_status":
                raise ToolCallError("status unavailable")
            return f"{name} reply"

        tools.call_tool.side_effect = call_tool
        agent = make_agent(tmp_path, tools=tools)

        response = await agent.execute_session("task", "/work")
        assert response.content == "start_session reply"

    async def test_without_session_tools_uses_run_tool(self, tmp_path: Path) -> None:
        tools = make_tools()
        tools.call_tool.return_value = "ran"
        agent = make_agent(tmp_path, tools=tools)

        response = await agent.execute_session("task", "/work")

        assert response.content == "ran"
        assert tools.call_tool.await_args.args[0] == "run_trae_agent"

    async def test_unreachable_server_uses_cli(self, tmp_path: Path) -> None:
        cli = make_cli()
        agent = make_agent(tmp_path, tools=make_tools(connected=False), cli=cli)

        response = await agent.execute_session("task", "/work")

        assert response.mode == "cli"
        cli.run.assert_awaited_once()

    async def test_session_call_failure_uses_cli(self, tmp_path: Path) -> None:
        tools = make_tools(tools=SESSION_TOOLS)
        tools.call_tool.side_effect = [
            json.dumps({"status": "idle"}),
            ToolCallError("start failed"),
        ]
        cli = make_cli()
        progress = ProgressLog()
        agent = make_agent(tmp_path, tools=tools, cli=cli)

        response = await agent.execute_session("task", "/work", progress)

        assert response.mode == "cli"
        assert "start failed" in progress.text


class TestParseWaitingSession:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ('{"status": "waiting", "session_id": "abc"}', "abc"),
            ('{"status": "waiting_for_observation", "session_id": 7}', "7"),
            ('{"status": "running", "session_id": "abc"}', None),
            ('{"status": "waiting"}', None),
            ('["waiting"]', None),
            ("not json", None),
        ],
    )
    def test_parse(self, text: str, expected: str | None) -> None:
        assert parse_waiting_session(text) == expected


# ------------------------------------------------------------------ #
# Availability and info
# ------------------------------------------------------------------ #


class TestAvailability:
    async def test_missing_agent_dir(self, tmp_path: Path) -> None:
        settings = TraeSettings(agent_dir=str(tmp_path / "absent"))
        agent = make_agent(tmp_path, settings=settings)
        with patch("agentbridge.trae.agent.probe", new_callable=AsyncMock) as mock_probe:
            assert await agent.is_available() is False
        mock_probe.assert_not_called()

    async def test_probe_result_cached(self, tmp_path: Path) -> None:
        agent = make_agent(tmp_path)
        with patch(
            "agentbridge.trae.agent.probe", new_callable=AsyncMock, return_value=True
        ) as mock_probe:
            assert await agent.is_available()
            assert await agent.is_available()
            assert mock_probe.await_count == 1
            assert mock_probe.await_args.args[1] == ["--help"]

            agent.reset_availability()
            mock_probe.return_value = False
            assert await agent.is_available() is False
            assert mock_probe.await_count == 2


class TestResolveTraeCli:
    def test_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        binary = tmp_path / "custom-trae"
        binary.write_text("")
        monkeypatch.setenv(TRAE_CLI_PATH_ENV, str(binary))
        resolved = resolve_trae_cli(TraeSettings(agent_dir=str(tmp_path)))
        assert resolved.path == str(binary)
        assert resolved.source == "env"

    def test_agent_venv(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(TRAE_CLI_PATH_ENV, raising=False)
        venv_cli = tmp_path / ".venv" / "bin" / "trae-cli"
        venv_cli.parent.mkdir(parents=True)
        venv_cli.write_text("")
        with patch("agentbridge.process.launcher._is_windows", return_value=False):
            resolved = resolve_trae_cli(TraeSettings(agent_dir=str(tmp_path)))
        assert resolved.path == str(venv_cli)
        assert resolved.source == "bundled"

    def test_bare_name(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(TRAE_CLI_PATH_ENV, raising=False)
        resolved = resolve_trae_cli(TraeSettings(agent_dir=str(tmp_path)))
        assert resolved.path == "trae-cli"


@pytest.mark.skipif(os.name == "nt", reason="uses /bin/sh scripts")
class TestGetInfo:
    def _script(self, tmp_path: Path, body: str) -> ResolvedExecutable:
        script = tmp_path / "trae-cli"
        script.write_text(f"#!/bin/sh\n{body}\n")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return ResolvedExecutable(str(script))

    async def test_unavailable(self, tmp_path: Path) -> None:
        agent = make_agent(tmp_path)
        with patch("agentbridge.trae.agent.probe", new_callable=AsyncMock, return_value=False):
            assert await agent.get_info() == "Trae agent is not available"

    async def test_info_tool_preferred(self, tmp_path: Path) -> None:
        tools = make_tools(tools=frozenset({"run_trae_agent", "get_trae_config"}))
        tools.call_tool.return_value = "  provider: anthropic\n"
        agent = make_agent(tmp_path, tools=tools)
        with patch("agentbridge.trae.agent.probe", new_callable=AsyncMock, return_value=True):
            assert await agent.get_info() == "provider: anthropic"
        assert tools.call_tool.await_args.args[0] == "get_trae_config"

    async def test_show_config_fallback(self, tmp_path: Path) -> None:
        executable = self._script(
            tmp_path, r'printf "\033[1m[bold]Model:[/bold]\033[0m gpt\n$1 $2\n"'
        )
        agent = make_agent(tmp_path, tools=make_tools(connected=False), executable=executable)
        with patch("agentbridge.trae.agent.probe", new_callable=AsyncMock, return_value=True):
            info = await agent.get_info()
        assert info.splitlines() == ["Model: gpt", "show-config --config-file"]

    async def test_show_config_failure(self, tmp_path: Path) -> None:
        executable = self._script(tmp_path, 'echo "config file not found" >&2\nexit 1')
        agent = make_agent(tmp_path, tools=make_tools(connected=False), executable=executable)
        with patch("agentbridge.trae.agent.probe", new_callable=AsyncMock, return_value=True):
            info = await agent.get_info()
        assert info == "Failed to get agent info: config file not found"

    async def test_show_config_spawn_error(self, tmp_path: Path) -> None:
        agent = make_agent(
            tmp_path,
            tools=make_tools(connected=False),
            executable=ResolvedExecutable(str(tmp_path / "missing")),
        )
        with patch("agentbridge.trae.agent.probe", new_callable=AsyncMock, return_value=True):
            info = await agent.get_info()
        assert info.startswith("Error getting agent info: Executable not found")


class TestLifecycle:
    async def test_stop_and_dispose(self, tmp_path: Path) -> None:
        tools = make_tools()
        cli = make_cli()
        agent = make_agent(tmp_path, tools=tools, cli=cli)

        await agent.stop()
        cli.stop.assert_awaited_once()
        tools.close.assert_not_called()

        await agent.dispose()
        assert cli.stop.await_count == 2
        tools.close.assert_awaited_once()
