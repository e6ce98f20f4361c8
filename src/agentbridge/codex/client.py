"""JSON-RPC client for a long-lived ``codex app-server`` process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections import OrderedDict, deque
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentbridge.codex.messages import (
    ErrorResponse,
    ExecApprovalRequest,
    InboundMessage,
    OtherNotification,
    OutputDelta,
    PatchApprovalRequest,
    RequestId,
    Response,
    TurnCompleted,
    TurnStarted,
    UnknownServerRequest,
    decode_message,
)
from agentbridge.config.models import CodexSettings
from agentbridge.constants import (
    AGENT_TAG_ENV,
    CLIENT_NAME,
    CLIENT_TITLE,
    CLIENT_VERSION,
    CODEX_PATH_ENV,
    NO_RESPONSE_TEXT,
    STDERR_TAIL_LINES,
    ApprovalCallback,
    ProgressCallback,
    StatusCallback,
)
from agentbridge.errors import (
    AgentUnavailableError,
    BridgeError,
    BridgeTimeoutError,
    DisposedError,
    InvalidDecisionError,
    ProtocolError,
    RpcError,
    SpawnError,
    TransportError,
)
from agentbridge.helpers import format_stderr_preview, record_error
from agentbridge.models import ApprovalDecision, ApprovalKind, ApprovalRequest, TurnResult
from agentbridge.process.launcher import (
    ResolvedExecutable,
    find_bundled_codex,
    probe,
    resolve_executable,
    spawn,
    terminate,
)
from agentbridge.session.models import (
    ApprovalDecidedEvent,
    ApprovalRequestedEvent,
    StatusEvent,
)
from agentbridge.session.recorder import SessionRecorder
from agentbridge.transport.channel import JsonLineChannel

logger = logging.getLogger(__name__)

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 3.0

#: Seconds allowed for reaping the process once its stdout closed.
_EXIT_REAP_WAIT = 1.0

#: Completed-but-unclaimed turns kept for late waiters.
_MAX_BUFFERED_TURNS = 32


class ConnectionState(str, Enum):
    """Lifecycle of the client's connection to the app-server."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"
    DISPOSED = "disposed"


@dataclass
class _Connection:
    """One spawned app-server process and the requests in flight on it."""

    process: asyncio.subprocess.Process
    channel: JsonLineChannel
    pending: dict[int, asyncio.Future[Any]] = field(default_factory=dict)
    next_id: int = 1
    ready: bool = False
    stderr_tail: deque[str] = field(
        default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES)
    )
    tasks: list[asyncio.Task[None]] = field(default_factory=list)

    def allocate_id(self) -> int:
        request_id = self.next_id
        self.next_id += 1
        return request_id

    def fail_pending(self, exc: BaseException) -> None:
        for future in self.pending.values():
            if not future.done():
                future.set_exception(exc)
        self.pending.clear()


def resolve_codex_executable(binary_path: str | None = None) -> ResolvedExecutable:
    """Resolve the codex binary: explicit, env var, bundled, then ``PATH``."""
    return resolve_executable(
        "codex",
        override=binary_path,
        env_var=CODEX_PATH_ENV,
        bundled=find_bundled_codex,
    )


class CodexClient:
    """Thin JSON-RPC client that talks to ``codex app-server`` over stdio.

    Owns at most one live ``_Connection``.  ``ensure_ready()`` lazily
    spawns the process and performs the ``initialize`` handshake;
    concurrent callers share one in-flight initialization.  After the
    process exits the client moves to ``ERROR`` and the next
    ``ensure_ready()`` replaces the dead connection.

    Server-initiated command approvals are forwarded to *on_approval*
    and answered later through ``respond_to_approval``.  Patch approvals
    are approved automatically; requests of any other kind are answered
    with ``settings.unknown_request_decision``.
    """

    def __init__(
        self,
        settings: CodexSettings | None = None,
        workspace_root: str | None = None,
        *,
        executable: ResolvedExecutable | None = None,
        recorder: SessionRecorder | None = None,
        on_approval: ApprovalCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        self._settings = settings or CodexSettings()
        self._workspace_root = workspace_root
        self._executable = executable or resolve_codex_executable(
            self._settings.binary_path
        )
        self._recorder = recorder
        self._on_approval = on_approval
        self._on_status = on_status

        self._state = ConnectionState.UNINITIALIZED
        self._conn: _Connection | None = None
        self._init_task: asyncio.Task[None] | None = None

        # Thread / turn bookkeeping.
        self._thread_id: str | None = None
        self._thread_cwd: str | None = None
        self._current_turn_id: str | None = None
        self._turn_lock = asyncio.Lock()
        self._progress: ProgressCallback | None = None
        self._pending_turns: dict[str, asyncio.Future[TurnResult]] = {}
        self._buffered_turns: OrderedDict[str, TurnResult] = OrderedDict()

        # Command approvals awaiting a decision from the caller.
        self._open_approvals: dict[RequestId, ApprovalRequest] = {}
        self._callback_tasks: set[asyncio.Task[None]] = set()

        logger.debug(
            "codex: binary path = %s (source=%s, shell=%s)",
            self._executable.path,
            self._executable.source,
            self._executable.requires_shell,
        )

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def executable(self) -> ResolvedExecutable:
        return self._executable

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

    @property
    def current_turn_id(self) -> str | None:
        return self._current_turn_id

    @property
    def pid(self) -> int | None:
        """PID of the live app-server process, if any."""
        if self._conn is None:
            return None
        return self._conn.process.pid

    @property
    def open_approvals(self) -> list[ApprovalRequest]:
        return list(self._open_approvals.values())

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def ensure_ready(self) -> None:
        """Spawn and initialize the app-server if it is not ready yet.

        Raises:
            DisposedError: The client has been disposed.
            AgentUnavailableError: Spawning or the handshake failed.
        """
        if self._state is ConnectionState.DISPOSED:
            msg = "Codex client has been disposed"
            raise DisposedError(msg)
        if self._state is ConnectionState.READY:
            return

        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        finally:
            if self._init_task is task and task.done():
                self._init_task = None

    async def _initialize(self) -> None:
        # Never leave two processes racing for the same stdio role.
        await self._teardown(DisposedError("Codex connection replaced"))
        self._raise_if_disposed()
        self._state = ConnectionState.INITIALIZING

        cwd = self._workspace_root or os.getcwd()
        try:
            proc = await spawn(
                self._executable,
                ["app-server"],
                cwd=cwd,
                env={AGENT_TAG_ENV: "codex"},
            )
        except SpawnError as exc:
            self._mark_error()
            msg = f"Codex agent unavailable: {exc}"
            raise AgentUnavailableError(msg) from exc

        if self._state is ConnectionState.DISPOSED:
            # dispose() ran while spawning; this process was never published.
            await terminate(proc, grace=_SIGTERM_WAIT)
            self._raise_if_disposed()

        conn = _Connection(
            process=proc,
            channel=JsonLineChannel(proc.stdout, proc.stdin, name="codex app-server"),
        )
        self._conn = conn
        conn.tasks.append(asyncio.create_task(self._read_loop(conn)))
        conn.tasks.append(asyncio.create_task(self._pump_stderr(conn)))

        try:
            await self._request(
                "initialize",
                {
                    "clientInfo": {
                        "name": CLIENT_NAME,
                        "title": CLIENT_TITLE,
                        "version": CLIENT_VERSION,
                    }
                },
                timeout=self._settings.initialize_timeout,
            )
        except BridgeError as exc:
            tail = format_stderr_preview(conn.stderr_tail)
            if self._state is ConnectionState.DISPOSED:
                raise DisposedError("Codex client disposed during initialization") from exc
            await self._teardown(DisposedError("Codex initialization failed"))
            self._mark_error()
            msg = f"Codex agent init failed: {exc}"
            if tail:
                msg += f"\n  {tail}"
            record_error(self._recorder, "codex", msg, context="handshake", logger=logger)
            raise AgentUnavailableError(msg) from exc

        if self._state is ConnectionState.DISPOSED or self._conn is not conn:
            await self._teardown(DisposedError("Codex client disposed during initialization"))
            self._raise_if_disposed()
            msg = "Codex connection was replaced during initialization"
            raise AgentUnavailableError(msg)

        conn.ready = True
        self._state = ConnectionState.READY
        logger.info("codex: app-server ready (pid %s)", proc.pid)
        await self._emit_status("Codex agent ready", record=True)

    async def dispose(self) -> None:
        """Kill the process and fail everything in flight. Idempotent."""
        if self._state is ConnectionState.DISPOSED:
            return
        self._state = ConnectionState.DISPOSED
        await self._teardown(DisposedError("Codex agent disposed"))
        for task in list(self._callback_tasks):
            task.cancel()

    async def _teardown(self, exc: BridgeError) -> None:
        """Dispose the current connection (if any) and fail its waiters."""
        conn, self._conn = self._conn, None
        self._reset_conversation()
        self._open_approvals.clear()
        for future in self._pending_turns.values():
            if not future.done():
                future.set_exception(exc)
        self._pending_turns.clear()
        self._buffered_turns.clear()

        if conn is None:
            return
        conn.ready = False
        conn.fail_pending(exc)
        current = asyncio.current_task()
        for task in conn.tasks:
            if task is not current:
                task.cancel()
        if conn.process.stdin is not None:
            with contextlib.suppress(Exception):
                conn.process.stdin.close()
        await terminate(conn.process, grace=_SIGTERM_WAIT)
        await asyncio.gather(
            *(task for task in conn.tasks if task is not current),
            return_exceptions=True,
        )

    def _raise_if_disposed(self) -> None:
        if self._state is ConnectionState.DISPOSED:
            msg = "Codex client disposed during initialization"
            raise DisposedError(msg)

    def _mark_error(self) -> None:
        if self._state is not ConnectionState.DISPOSED:
            self._state = ConnectionState.ERROR

    def _reset_conversation(self) -> None:
        self._thread_id = None
        self._thread_cwd = None
        self._current_turn_id = None

    def reset_thread(self) -> None:
        """Forget the current thread; the next message starts a new one."""
        self._thread_id = None
        self._thread_cwd = None

    async def is_available(self) -> bool:
        """Return whether this client's binary answers ``--version``."""
        return await probe(
            self._executable, ["--version"], cwd=self._workspace_root or os.getcwd()
        )

    @classmethod
    async def detect_availability(
        cls,
        settings: CodexSettings | None = None,
        workspace_root: str | None = None,
    ) -> bool:
        """Return whether ``codex --version`` runs successfully."""
        settings = settings or CodexSettings()
        executable = resolve_codex_executable(settings.binary_path)
        return await probe(executable, ["--version"], cwd=workspace_root or os.getcwd())

    # ------------------------------------------------------------------ #
    # Conversation
    # ------------------------------------------------------------------ #

    async def send_message(
        self,
        text: str,
        working_directory: str,
        on_progress: ProgressCallback | None = None,
    ) -> TurnResult:
        """Run one turn and return the last agent message it produced.

        Starts a new thread when none exists or *working_directory*
        differs from the directory the current thread is bound to.
        """
        await self.ensure_ready()
        async with self._turn_lock:
            if self._thread_id is None or self._thread_cwd != working_directory:
                await self._start_thread(working_directory)

            self._progress = on_progress
            turn_id: str | None = None
            try:
                result = await self._request(
                    "turn/start",
                    {
                        "threadId": self._thread_id,
                        "input": [{"type": "text", "text": text}],
                    },
                    timeout=self._settings.request_timeout,
                )
                turn_id = _nested_id(result, "turn")
                if turn_id is None:
                    msg = "Codex turn did not provide an id"
                    raise ProtocolError(msg)
                self._current_turn_id = turn_id
                return await self.wait_for_turn(
                    turn_id, timeout=self._settings.turn_timeout
                )
            finally:
                self._progress = None
                if turn_id is not None and self._current_turn_id == turn_id:
                    self._current_turn_id = None

    async def _start_thread(self, working_directory: str) -> None:
        params: dict[str, Any] = {
            "cwd": working_directory,
            "approval_policy": self._settings.approval_policy,
            "sandbox": self._settings.sandbox,
        }
        if self._settings.model:
            params["model"] = self._settings.model
        result = await self._request(
            "thread/start", params, timeout=self._settings.request_timeout
        )
        thread_id = _nested_id(result, "thread")
        if thread_id is None:
            msg = "Codex thread creation failed: no thread id in response"
            raise ProtocolError(msg)
        self._thread_id = thread_id
        self._thread_cwd = working_directory
        self._current_turn_id = None
        logger.info("codex: started thread %s in %s", thread_id, working_directory)

    async def wait_for_turn(
        self, turn_id: str, timeout: float | None = None
    ) -> TurnResult:
        """Wait for ``turn/completed`` for *turn_id*.

        A completion that arrived before anyone waited is taken from the
        buffer and removed, so it is delivered at most once.
        """
        buffered = self._buffered_turns.pop(turn_id, None)
        if buffered is not None:
            return buffered
        if self._conn is None:
            msg = "Codex process is not running"
            raise AgentUnavailableError(msg)
        if turn_id in self._pending_turns:
            msg = f"Already waiting for turn {turn_id}"
            raise RuntimeError(msg)

        future: asyncio.Future[TurnResult] = asyncio.get_running_loop().create_future()
        self._pending_turns[turn_id] = future
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as exc:
            msg = f"Codex turn {turn_id} did not complete within {timeout}s"
            raise BridgeTimeoutError(msg) from exc
        finally:
            if self._pending_turns.get(turn_id) is future:
                del self._pending_turns[turn_id]

    async def interrupt_current_turn(self) -> None:
        """Ask the server to interrupt the current turn (best effort)."""
        if self._thread_id is None or self._current_turn_id is None:
            return
        try:
            await self._request(
                "turn/interrupt",
                {"threadId": self._thread_id, "turnId": self._current_turn_id},
                timeout=self._settings.request_timeout,
            )
        except BridgeError as exc:
            logger.warning("codex: failed to interrupt turn: %s", exc)

    # ------------------------------------------------------------------ #
    # Approvals
    # ------------------------------------------------------------------ #

    async def respond_to_approval(
        self, request_id: RequestId, decision: ApprovalDecision
    ) -> bool:
        """Send *decision* for an open command approval.

        Returns ``False`` (and sends nothing) when *request_id* is unknown
        or was already answered.

        Raises:
            TransportError: The decision could not be written.
            InvalidDecisionError: *decision* is not an ``ApprovalDecision``.
        """
        try:
            chosen = ApprovalDecision(decision)
        except ValueError as exc:
            # The request stays open so a valid decision can still be sent.
            msg = f"Invalid approval decision {decision!r} for request {request_id!r}"
            raise InvalidDecisionError(msg) from exc

        request = self._open_approvals.pop(request_id, None)
        if request is None:
            logger.warning("codex: no open approval request %r", request_id)
            return False
        await self._write_decision(request_id, chosen, automatic=False)
        return True

    async def _write_decision(
        self, request_id: RequestId, decision: ApprovalDecision, *, automatic: bool
    ) -> None:
        conn = self._conn
        if conn is None:
            msg = "Codex process is not running"
            raise TransportError(msg)
        await conn.channel.send({"id": request_id, "result": {"decision": decision.value}})
        if self._recorder is not None:
            self._recorder.record(
                ApprovalDecidedEvent(
                    ts="",
                    seq=0,
                    request_id=request_id,
                    decision=decision.value,
                    automatic=automatic,
                )
            )

    async def _auto_decide(self, request_id: RequestId, decision: ApprovalDecision) -> None:
        try:
            await self._write_decision(request_id, decision, automatic=True)
        except TransportError as exc:
            logger.warning("codex: failed to answer request %r: %s", request_id, exc)

    async def _handle_exec_approval(self, message: ExecApprovalRequest) -> None:
        request = ApprovalRequest(
            request_id=message.id,
            command=message.command,
            cwd=message.cwd,
            kind=ApprovalKind.COMMAND,
            reason=message.reason,
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
                )
            )

        if self._on_approval is None:
            logger.warning(
                "codex: no approval handler, answering %r with %s",
                message.id,
                self._settings.unattended_command_decision.value,
            )
            await self._auto_decide(message.id, self._settings.unattended_command_decision)
            return

        self._open_approvals[message.id] = request
        self._spawn_callback(self._on_approval(request))

    def _spawn_callback(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task[None]) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("codex: approval handler failed: %s", task.exception())

    # ------------------------------------------------------------------ #
    # Request / response plumbing
    # ------------------------------------------------------------------ #

    async def _request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        conn = self._conn
        if conn is None:
            msg = "Codex process is not running"
            raise AgentUnavailableError(msg)

        request_id = conn.allocate_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        conn.pending[request_id] = future
        payload: dict[str, Any] = {"id": request_id, "method": method}
        if params is not None:
            payload["params"] = params

        try:
            await conn.channel.send(payload)
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as exc:
            msg = f"Codex request '{method}' timed out after {timeout}s"
            raise BridgeTimeoutError(msg) from exc
        finally:
            conn.pending.pop(request_id, None)

    async def _read_loop(self, conn: _Connection) -> None:
        """Read frames from stdout until EOF and dispatch each one."""
        try:
            while True:
                try:
                    doc = await conn.channel.receive()
                except ProtocolError as exc:
                    logger.warning("codex: %s", exc)
                    continue
                if doc is None:
                    break
                try:
                    message = decode_message(doc)
                except ProtocolError as exc:
                    logger.warning("codex: %s", exc)
                    continue
                await self._dispatch(conn, message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("codex: read loop error: %s", exc)

        await self._connection_lost(conn)

    async def _dispatch(self, conn: _Connection, message: InboundMessage) -> None:
        match message:
            case Response(id=request_id, result=result):
                future = conn.pending.pop(request_id, None)
                if future is None:
                    logger.debug("codex: response for unknown id %r", request_id)
                elif not future.done():
                    future.set_result(result)
            case ErrorResponse(id=request_id, message=text, code=code):
                future = conn.pending.pop(request_id, None)
                if future is None:
                    logger.debug("codex: error for unknown id %r: %s", request_id, text)
                elif not future.done():
                    future.set_exception(RpcError(text, code))
            case ExecApprovalRequest():
                await self._handle_exec_approval(message)
            case PatchApprovalRequest(id=request_id):
                await self._auto_decide(request_id, ApprovalDecision.APPROVED)
            case UnknownServerRequest(id=request_id, method=method):
                decision = self._settings.unknown_request_decision
                logger.warning(
                    "codex: unrecognised server request %s, answering %s",
                    method,
                    decision.value,
                )
                await self._auto_decide(request_id, decision)
            case TurnStarted(turn_id=turn_id):
                if turn_id:
                    self._current_turn_id = turn_id
            case TurnCompleted():
                self._complete_turn(message)
            case OutputDelta(delta=delta):
                if delta and self._progress is not None:
                    try:
                        await self._progress(delta)
                    except Exception as exc:
                        logger.warning("codex: progress callback failed: %s", exc)
            case OtherNotification(method=method):
                logger.debug("codex: ignoring notification %s", method)

    def _complete_turn(self, message: TurnCompleted) -> None:
        text = message.agent_text
        result = TurnResult(
            turn_id=message.turn_id,
            text=NO_RESPONSE_TEXT if text is None else text,
            raw_turn=message.turn,
        )
        if self._current_turn_id == message.turn_id:
            self._current_turn_id = None

        waiter = self._pending_turns.pop(message.turn_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(result)
            return
        self._buffered_turns[message.turn_id] = result
        while len(self._buffered_turns) > _MAX_BUFFERED_TURNS:
            self._buffered_turns.popitem(last=False)

    async def _connection_lost(self, conn: _Connection) -> None:
        if conn is not self._conn:
            return
        self._conn = None
        conn.ready = False
        self._mark_error()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(conn.process.wait(), timeout=_EXIT_REAP_WAIT)

        msg = f"Codex process exited (code={conn.process.returncode})"
        tail = format_stderr_preview(conn.stderr_tail)
        if tail:
            msg += f"\n  {tail}"
        record_error(self._recorder, "codex", msg, logger=logger)

        error = AgentUnavailableError(msg)
        conn.fail_pending(error)
        for future in self._pending_turns.values():
            if not future.done():
                future.set_exception(error)
        self._pending_turns.clear()
        self._open_approvals.clear()
        self._reset_conversation()
        await self._emit_status(msg)

    async def _pump_stderr(self, conn: _Connection) -> None:
        stream = conn.process.stderr
        if stream is None:
            return
        try:
            while True:
                try:
                    line = await stream.readline()
                except ValueError:
                    logger.warning("codex: stderr line exceeded buffer limit, skipping")
                    continue
                if not line:
                    break
                text = line.decode(errors="replace").rstrip()
                if not text:
                    continue
                conn.stderr_tail.append(text)
                logger.debug("codex: stderr: %s", text)
                await self._emit_status(text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("codex: stderr read error: %s", exc)

    async def _emit_status(self, text: str, *, record: bool = False) -> None:
        if record and self._recorder is not None:
            self._recorder.record(StatusEvent(ts="", seq=0, component="codex", status=text))
        if self._on_status is None:
            return
        try:
            await self._on_status(text)
        except Exception as exc:
            logger.warning("codex: status callback failed: %s", exc)


def _nested_id(result: Any, key: str) -> str | None:
    """Extract ``result[key]["id"]`` as a string, if present."""
    if not isinstance(result, dict):
        return None
    inner = result.get(key)
    if not isinstance(inner, dict):
        return None
    value = inner.get("id")
    return str(value) if value is not None else None
