"""Executable resolution and subprocess spawning for agent backends."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import subprocess
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from agentbridge.errors import ResolutionError, SpawnError

logger = logging.getLogger(__name__)

#: Maximum bytes per line buffered by asyncio stream readers (1 MB).
_STREAM_LIMIT = 1_048_576

#: Directory-name prefix of the editor extension that bundles Codex.
_CODEX_EXTENSION_PREFIX = "openai.chatgpt-"


@dataclass(frozen=True)
class ResolvedExecutable:
    """An executable path plus how it must be launched.

    ``source`` records which resolution step produced the path:
    ``override``, ``env``, ``bundled`` or ``path``.
    """

    path: str
    requires_shell: bool = False
    source: str = "path"


def _is_windows() -> bool:
    return sys.platform == "win32"


def _needs_shell(candidate: str) -> bool:
    return _is_windows() and candidate.lower().endswith((".cmd", ".bat"))


def resolve_executable(
    command_name: str,
    *,
    override: str | None = None,
    env_var: str | None = None,
    bundled: Callable[[], str | None] | None = None,
) -> ResolvedExecutable:
    """Resolve *command_name* to a launchable executable.

    Tries, in order: the explicit *override*, the *env_var* override, the
    *bundled* finder, then the bare command name for a ``PATH`` lookup.
    Explicit candidates are skipped when they do not exist on disk.
    Never raises; an unusable result surfaces when spawning.
    """
    candidates: list[tuple[str, str]] = []
    if override and override.strip():
        candidates.append((override.strip(), "override"))
    if env_var:
        from_env = os.environ.get(env_var, "").strip()
        if from_env:
            candidates.append((from_env, "env"))
    if bundled is not None:
        try:
            found = bundled()
        except OSError as exc:
            logger.debug("bundled lookup for %s failed: %s", command_name, exc)
            found = None
        if found:
            candidates.append((found, "bundled"))

    seen: set[str] = set()
    for candidate, source in candidates:
        if candidate in seen:
            continue
        seen.add(candidate)
        if Path(candidate).exists():
            return ResolvedExecutable(candidate, _needs_shell(candidate), source)
        logger.debug("%s candidate %s (%s) does not exist", command_name, candidate, source)

    return ResolvedExecutable(command_name, False, "path")


def _platform_dir() -> tuple[str, str]:
    """Return (bundle directory name, binary name) for this platform."""
    machine = platform.machine().lower()
    arm = machine in ("arm64", "aarch64")
    if _is_windows():
        return "windows-x86_64", "codex.exe"
    if sys.platform == "darwin":
        return ("macos-arm64" if arm else "macos-x86_64"), "codex"
    return ("linux-aarch64" if arm else "linux-x86_64"), "codex"


def find_bundled_codex(home: Path | None = None) -> str | None:
    """Find a Codex binary shipped inside an installed editor extension.

    Scans ``~/.vscode/extensions/openai.chatgpt-*`` newest first.
    """
    if home is None:
        home_str = os.environ.get("USERPROFILE") or os.environ.get("HOME")
        if not home_str:
            return None
        home = Path(home_str)

    extensions_dir = home / ".vscode" / "extensions"
    if not extensions_dir.is_dir():
        return None

    entries = sorted(
        (
            entry
            for entry in extensions_dir.iterdir()
            if entry.is_dir() and entry.name.startswith(_CODEX_EXTENSION_PREFIX)
        ),
        key=lambda entry: entry.name,
        reverse=True,
    )
    bundle_dir, binary = _platform_dir()
    for entry in entries:
        candidate = entry / "bin" / bundle_dir / binary
        if candidate.is_file():
            return str(candidate)
    return None


def venv_executable(venv_root: Path, name: str) -> Path:
    """Return the path of console script *name* inside a virtualenv."""
    if _is_windows():
        return venv_root / "Scripts" / f"{name}.exe"
    return venv_root / "bin" / name


def build_env(overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """Merge the current environment with fixed *overrides*."""
    env = dict(os.environ)
    if overrides:
        env.update(overrides)
    return env


async def spawn(
    executable: ResolvedExecutable,
    args: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    stdin: int | None = asyncio.subprocess.PIPE,
) -> asyncio.subprocess.Process:
    """Start *executable* with *args*, piping stdout and stderr.

    Raises:
        ResolutionError: The executable does not exist.
        SpawnError: Any other OS-level failure to start the process.
    """
    full_env = build_env(env)
    try:
        if executable.requires_shell:
            command_line = subprocess.list2cmdline([executable.path, *args])
            return await asyncio.create_subprocess_shell(
                command_line,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=full_env,
                limit=_STREAM_LIMIT,
            )
        return await asyncio.create_subprocess_exec(
            executable.path,
            *args,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=full_env,
            limit=_STREAM_LIMIT,
            start_new_session=not _is_windows(),
        )
    except FileNotFoundError as exc:
        msg = (
            f"Executable not found: {executable.path}. "
            f"Make sure it is installed and on your PATH."
        )
        raise ResolutionError(msg) from exc
    except OSError as exc:
        msg = f"Failed to spawn {executable.path}: {exc}"
        raise SpawnError(msg) from exc


async def probe(
    executable: ResolvedExecutable,
    args: Sequence[str],
    *,
    cwd: str | Path | None = None,
    timeout: float = 30.0,
) -> bool:
    """Run *executable* once and report whether it exited with code 0."""
    try:
        proc = await spawn(executable, args, cwd=cwd, stdin=asyncio.subprocess.DEVNULL)
    except SpawnError as exc:
        logger.warning("probe of %s failed: %s", executable.path, exc)
        return False
    try:
        await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        await terminate(proc)
        logger.warning("probe of %s timed out after %ss", executable.path, timeout)
        return False
    return proc.returncode == 0


async def terminate(
    proc: asyncio.subprocess.Process, grace: float = 3.0
) -> int | None:
    """SIGTERM *proc*, then SIGKILL if it outlives *grace* seconds."""
    if proc.returncode is not None:
        return proc.returncode
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        return await asyncio.wait_for(proc.wait(), timeout=grace)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        return await proc.wait()
