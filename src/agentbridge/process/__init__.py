"""Process launching for agent backends."""

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

__all__ = [
    "ResolvedExecutable",
    "build_env",
    "find_bundled_codex",
    "probe",
    "resolve_executable",
    "spawn",
    "terminate",
    "venv_executable",
]
