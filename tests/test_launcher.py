"""Tests for executable resolution and subprocess helpers."""

from __future__ import annotations

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from agentbridge.errors import ResolutionError, SpawnError
from agentbridge.process.launcher import (
    ResolvedExecutable,
    build_env,
    find_bundled_codex,
    probe,
    resolve_executable,
    spawn,
    terminate,
    venv_executable,
)

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _make_script(path: Path, body: str) -> Path:
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# ------------------------------------------------------------------ #
# Resolution order
# ------------------------------------------------------------------ #


class TestResolveExecutable:
    def test_override_first(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        override = tmp_path / "explicit"
        override.write_text("")
        from_env = tmp_path / "from-env"
        from_env.write_text("")
        monkeypatch.setenv("TOOL_PATH", str(from_env))

        resolved = resolve_executable(
            "tool", override=str(override), env_var="TOOL_PATH", bundled=lambda: None
        )
        assert resolved == ResolvedExecutable(str(override), False, "override")

    def test_missing_override_skipped(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from_env = tmp_path / "from-env"
        from_env.write_text("")
        monkeypatch.setenv("TOOL_PATH", str(from_env))

        resolved = resolve_executable(
            "tool", override=str(tmp_path / "nope"), env_var="TOOL_PATH"
        )
        assert resolved.path == str(from_env)
        assert resolved.source == "env"

    def test_bundled_after_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        bundled = tmp_path / "bundled"
        bundled.write_text("")
        monkeypatch.delenv("TOOL_PATH", raising=False)

        resolved = resolve_executable(
            "tool", env_var="TOOL_PATH", bundled=lambda: str(bundled)
        )
        assert resolved.path == str(bundled)
        assert resolved.source == "bundled"

    def test_bundled_oserror_ignored(self) -> None:
        def broken() -> str | None:
            raise PermissionError("denied")

        resolved = resolve_executable("tool", bundled=broken)
        assert resolved == ResolvedExecutable("tool", False, "path")

    def test_falls_back_to_command_name(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TOOL_PATH", "   ")
        resolved = resolve_executable("tool", override="  ", env_var="TOOL_PATH")
        assert resolved == ResolvedExecutable("tool", False, "path")

    def test_windows_batch_needs_shell(self, tmp_path: Path) -> None:
        script = tmp_path / "codex.cmd"
        script.write_text("")
        with patch("agentbridge.process.launcher._is_windows", return_value=True):
            resolved = resolve_executable("codex", override=str(script))
        assert resolved.requires_shell is True


class TestFindBundledCodex:
    def test_newest_extension_wins(self, tmp_path: Path) -> None:
        extensions = tmp_path / ".vscode" / "extensions"
        with patch(
            "agentbridge.process.launcher._platform_dir",
            return_value=("linux-x86_64", "codex"),
        ):
            for version in ("1.0.0", "1.2.0"):
                bin_dir = extensions / f"openai.chatgpt-{version}" / "bin" / "linux-x86_64"
                bin_dir.mkdir(parents=True)
                (bin_dir / "codex").write_text("")
            (extensions / "someone.else-9.9.9").mkdir()

            found = find_bundled_codex(tmp_path)

        assert found == str(
            extensions / "openai.chatgpt-1.2.0" / "bin" / "linux-x86_64" / "codex"
        )

    def test_no_extensions_dir(self, tmp_path: Path) -> None:
        assert find_bundled_codex(tmp_path) is None

    def test_extension_without_binary(self, tmp_path: Path) -> None:
        (tmp_path / ".vscode" / "extensions" / "openai.chatgpt-1.0.0").mkdir(parents=True)
        assert find_bundled_codex(tmp_path) is None


class TestVenvExecutable:
    def test_posix_layout(self, tmp_path: Path) -> None:
        with patch("agentbridge.process.launcher._is_windows", return_value=False):
            assert venv_executable(tmp_path, "trae-cli") == tmp_path / "bin" / "trae-cli"

    def test_windows_layout(self, tmp_path: Path) -> None:
        with patch("agentbridge.process.launcher._is_windows", return_value=True):
            assert (
                venv_executable(tmp_path, "python") == tmp_path / "Scripts" / "python.exe"
            )


class TestBuildEnv:
    def test_overrides_merge_with_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEEP_ME", "1")
        env = build_env({"PYTHONUTF8": "1"})
        assert env["KEEP_ME"] == "1"
        assert env["PYTHONUTF8"] == "1"


# ------------------------------------------------------------------ #
# Spawning
# ------------------------------------------------------------------ #


@pytest.mark.skipif(os.name == "nt", reason="uses /bin/sh scripts")
class TestSpawn:
    async def test_missing_executable_is_resolution_error(self, tmp_path: Path) -> None:
        with pytest.raises(ResolutionError, match="Executable not found"):
            await spawn(ResolvedExecutable(str(tmp_path / "does-not-exist")), [])

    async def test_permission_error_is_spawn_error(self, tmp_path: Path) -> None:
        script = tmp_path / "not-executable"
        script.write_text("#!/bin/sh\n")
        with pytest.raises(SpawnError) as exc_info:
            await spawn(ResolvedExecutable(str(script)), [])
        assert not isinstance(exc_info.value, ResolutionError)

    async def test_env_and_args_passed(self, tmp_path: Path) -> None:
        script = _make_script(tmp_path / "echo-env", 'echo "$1:$AGENT_TAG"')
        proc = await spawn(ResolvedExecutable(str(script)), ["hi"], env={"AGENT_TAG": "codex"})
        stdout, _ = await proc.communicate()
        assert stdout.decode().strip() == "hi:codex"

    async def test_probe_reports_exit_status(self, tmp_path: Path) -> None:
        ok = _make_script(tmp_path / "ok", "exit 0")
        bad = _make_script(tmp_path / "bad", "exit 3")
        assert await probe(ResolvedExecutable(str(ok)), ["--version"]) is True
        assert await probe(ResolvedExecutable(str(bad)), ["--version"]) is False
        assert await probe(ResolvedExecutable(str(tmp_path / "missing")), []) is False

    async def test_probe_timeout(self, tmp_path: Path) -> None:
        slow = _make_script(tmp_path / "slow", "exec sleep 5")
        assert await probe(ResolvedExecutable(str(slow)), [], timeout=0.2) is False

    async def test_terminate_running_process(self, tmp_path: Path) -> None:
        slow = _make_script(tmp_path / "slow", "exec sleep 5")
        proc = await spawn(ResolvedExecutable(str(slow)), [])
        code = await terminate(proc, grace=2.0)
        assert code is not None
        assert proc.returncode is not None

    async def test_terminate_finished_process(self, tmp_path: Path) -> None:
        done = _make_script(tmp_path / "done", "exit 0")
        proc = await spawn(ResolvedExecutable(str(done)), [])
        await proc.wait()
        assert await terminate(proc) == 0
