"""One-shot ``trae-cli run`` executor with inactivity and overall timeouts."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agentbridge.config.models import TraeSettings
from agentbridge.constants import (
    AGENT_TAG_ENV,
    DEBUG_ENV,
    UTF8_ENV,
    ProgressCallback,
)
from agentbridge.errors import BridgeTimeoutError, SpawnError
from agentbridge.helpers import record_error
from agentbridge.models import AgentResponse, Backend
from agentbridge.process.launcher import ResolvedExecutable, spawn, terminate
from agentbridge.session.recorder import SessionRecorder
from agentbridge.trae.sanitize import sanitize_output
from agentbridge.trae.trace import parse_tool_calls_from_output, parse_trace_file

logger = logging.getLogger(__name__)

MODE = "cli"

_READ_CHUNK = 65536


def build_trajectory_path(directory: Path, now: datetime | None = None) -> Path:
    """Return a fresh, collision-resistant trace file path inside *directory*."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return directory / f"trajectory_{stamp}_{uuid.uuid4().hex[:12]}.json"


def debug_enabled() -> bool:
    return os.environ.get(DEBUG_ENV, "").strip().lower() in ("1", "true")


@dataclass
class _CliRun:
    """Mutable state of one running CLI process."""

    process: asyncio.subprocess.Process
    on_progress: ProgressCallback | None
    debug: bool
    last_activity: float
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    stopped: bool = False

    def output(self) -> str:
        return sanitize_output("".join(self.stdout))

    def errors(self) -> str:
        return sanitize_output("".join(self.stderr))


class CLIExecutor:
    """Runs one ``trae-cli run`` per message and turns its outcome into an
    ``AgentResponse``.

    Two timers race the process: an inactivity timer reset by any stdout
    or stderr output and an overall ceiling.  When either fires the
    process is terminated and the output captured so far is returned in
    a ``timeout`` failure.  On normal exit the trace file is preferred
    for the final text and tool calls; captured stdout is the fallback.
    """

    def __init__(
        self,
        settings: TraeSettings,
        executable: ResolvedExecutable,
        *,
        recorder: SessionRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._executable = executable
        self._recorder = recorder
        self._run: _CliRun | None = None

    @property
    def running(self) -> bool:
        return self._run is not None

    def build_args(self, message: str, working_directory: str, trajectory: Path) -> list[str]:
        return [
            "run",
            message,
            "--config-file",
            str(self._settings.resolved_config_file),
            "--console-type",
            "simple",
            "--trajectory-file",
            str(trajectory),
            "--working-dir",
            working_directory,
        ]

    async def run(
        self,
        message: str,
        working_directory: str,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResponse:
        """Execute *message* and always resolve with a response."""
        trajectory = build_trajectory_path(self._settings.resolved_trajectory_dir)
        try:
            trajectory.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("trae: cannot create trajectory dir %s: %s", trajectory.parent, exc)

        debug = debug_enabled()
        args = self.build_args(message, working_directory, trajectory)
        await self._debug(
            f"Launching CLI: {self._executable.path} {json.dumps(args)}", on_progress, debug
        )
        try:
            proc = await spawn(
                self._executable,
                args,
                cwd=working_directory,
                env={**UTF8_ENV, "PYTHONUNBUFFERED": "1", AGENT_TAG_ENV: "trae"},
                stdin=asyncio.subprocess.DEVNULL,
            )
        except SpawnError as exc:
            record_error(self._recorder, "trae", str(exc), context="cli", logger=logger)
            return AgentResponse.failed(
                f"Process error: {exc}", kind=exc.kind, mode=MODE, backend=Backend.TRAE
            )

        loop = asyncio.get_running_loop()
        run = _CliRun(
            process=proc, on_progress=on_progress, debug=debug, last_activity=loop.time()
        )
        self._run = run
        try:
            return await self._supervise(run, trajectory)
        finally:
            self._run = None

    async def stop(self) -> None:
        """Send SIGTERM to the running process, if any."""
        run = self._run
        if run is None or run.process.returncode is not None:
            return
        run.stopped = True
        logger.info("trae: stopping CLI process %s", run.process.pid)
        with contextlib.suppress(ProcessLookupError):
            run.process.terminate()

    async def _supervise(self, run: _CliRun, trajectory: Path) -> AgentResponse:
        loop = asyncio.get_running_loop()
        started = loop.time()
        inactivity = self._settings.inactivity_timeout
        overall = self._settings.overall_timeout

        pumps = [
            asyncio.create_task(self._pump(run, run.process.stdout, run.stdout, "stdout")),
            asyncio.create_task(self._pump(run, run.process.stderr, run.stderr, "stderr")),
        ]
        waiter = asyncio.create_task(self._wait_exit(run.process, pumps))
        try:
            while True:
                now = loop.time()
                idle_left = run.last_activity + inactivity - now
                overall_left = started + overall - now
                if overall_left <= 0:
                    return await self._timed_out(
                        run, f"Trae agent reached max total duration ({overall:g}s)"
                    )
                if idle_left <= 0:
                    return await self._timed_out(
                        run, f"Trae agent timed out after {inactivity:g}s of inactivity"
                    )
                done, _ = await asyncio.wait({waiter}, timeout=min(idle_left, overall_left))
                if waiter in done:
                    break
        except asyncio.CancelledError:
            await terminate(run.process)
            raise
        finally:
            for task in (*pumps, waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*pumps, waiter, return_exceptions=True)

        code = waiter.result()
        await self._debug(f"process exited with code {code}", run.on_progress, run.debug)
        return self._finish(run, code, trajectory)

    async def _timed_out(self, run: _CliRun, reason: str) -> AgentResponse:
        # Snapshot before terminating so late output does not leak in.
        content = run.output()
        await terminate(run.process)
        record_error(self._recorder, "trae", reason, context="cli", logger=logger)
        return AgentResponse.failed(
            reason,
            kind=BridgeTimeoutError.kind,
            content=content,
            mode=MODE,
            backend=Backend.TRAE,
        )

    def _finish(self, run: _CliRun, code: int | None, trajectory: Path) -> AgentResponse:
        output = run.output()
        if run.stopped:
            return AgentResponse.failed(
                "Trae agent execution stopped",
                kind="stopped",
                content=output,
                mode=MODE,
                backend=Backend.TRAE,
            )

        trace = parse_trace_file(trajectory)
        logger.debug("trae: trace %s parsed: %s", trajectory, trace is not None)
        if trace is not None:
            content = trace.final_result if trace.final_result is not None else output.strip()
            tool_calls = trace.tool_calls
        else:
            content = output.strip()
            tool_calls = parse_tool_calls_from_output(output)

        if self._settings.trust_trace_success and trace is not None and trace.success is not None:
            success = trace.success
        else:
            success = code == 0 and (trace is None or trace.success is not False)

        if success:
            return AgentResponse(
                success=True,
                content=content,
                tool_calls=tool_calls,
                mode=MODE,
                backend=Backend.TRAE,
            )

        if code == 0:
            error, kind = "Trae agent reported an unsuccessful run", "agent_failure"
        else:
            error, kind = run.errors().strip() or f"Process exited with code {code}", "exit_code"
        record_error(self._recorder, "trae", error, context="cli", logger=logger)
        response = AgentResponse.failed(
            error, kind=kind, content=content, mode=MODE, backend=Backend.TRAE
        )
        response.tool_calls = tool_calls
        return response

    async def _wait_exit(
        self, proc: asyncio.subprocess.Process, pumps: list[asyncio.Task[None]]
    ) -> int:
        await asyncio.gather(*pumps)
        return await proc.wait()

    async def _pump(
        self,
        run: _CliRun,
        stream: asyncio.StreamReader | None,
        sink: list[str],
        label: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                run.last_activity = loop.time()
                text = decoder.decode(chunk)
                if not text:
                    continue
                sink.append(text)
                await self._debug(f"{label} raw: {json.dumps(text)}", run.on_progress, run.debug)
                if label == "stdout" and run.on_progress is not None:
                    await _safe_progress(run.on_progress, sanitize_output(text))
            tail = decoder.decode(b"", final=True)
            if tail:
                sink.append(tail)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("trae: %s read error: %s", label, exc)

    async def _debug(
        self, message: str, on_progress: ProgressCallback | None, enabled: bool
    ) -> None:
        logger.debug("trae: %s", message)
        if enabled and on_progress is not None:
            await _safe_progress(on_progress, f"[trae debug] {message}\n")


async def _safe_progress(on_progress: ProgressCallback, text: str) -> None:
    try:
        await on_progress(text)
    except Exception as exc:
        logger.warning("trae: progress callback failed: %s", exc)
