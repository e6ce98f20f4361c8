"""AgentBridge facade: one interface over the Codex and Trae backends."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from agentbridge.codex.client import CodexClient
from agentbridge.config.models import BridgeConfig
from agentbridge.constants import ApprovalCallback, ProgressCallback, StatusCallback
from agentbridge.errors import AgentUnavailableError, BridgeError, DisposedError
from agentbridge.models import AgentResponse, ApprovalDecision, Backend
from agentbridge.session.models import (
    BackendFallbackEvent,
    RequestDoneEvent,
    RequestStartEvent,
    StatusEvent,
)
from agentbridge.session.recorder import SessionRecorder
from agentbridge.trae.agent import TraeAgent

logger = logging.getLogger(__name__)

APP_SERVER_MODE = "app-server"

NO_WORKING_DIRECTORY = "no_working_directory"

_NO_WORKING_DIRECTORY_TEXT = (
    "No working directory selected. Open a project folder or choose "
    "a working directory before running the agent."
)

CodexFactory = Callable[[BridgeConfig], CodexClient]
TraeFactory = Callable[[BridgeConfig], TraeAgent]


class AgentBridge:
    """Single entry point the rest of the application talks to.

    Tries the preferred backend first and, when ``config.fallback`` is
    set, the other one if the first is unavailable.  Backend objects are
    created lazily and owned exclusively by the bridge.  ``send_message``
    and ``send_message_session`` never raise; every failure comes back
    as an ``AgentResponse`` with ``success=False``.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        recorder: SessionRecorder | None = None,
        on_approval: ApprovalCallback | None = None,
        on_status: StatusCallback | None = None,
        codex_factory: CodexFactory | None = None,
        trae_factory: TraeFactory | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._recorder = recorder
        self._on_approval = on_approval
        self._on_status = on_status
        self._codex_factory = codex_factory or self._build_codex
        self._trae_factory = trae_factory or self._build_trae

        self._codex: CodexClient | None = None
        self._trae: TraeAgent | None = None
        self._last_backend: Backend | None = None
        self._disposed = False

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def backend(self) -> Backend:
        """The preferred backend."""
        return self._config.backend

    @property
    def last_backend(self) -> Backend | None:
        """Backend that produced the most recent response."""
        return self._last_backend

    # ------------------------------------------------------------------ #
    # Backend construction
    # ------------------------------------------------------------------ #

    def _build_codex(self, config: BridgeConfig) -> CodexClient:
        return CodexClient(
            config.codex,
            config.workspace_root,
            recorder=self._recorder,
            on_approval=self._on_approval,
            on_status=self._on_status,
        )

    def _build_trae(self, config: BridgeConfig) -> TraeAgent:
        return TraeAgent(
            config.trae, recorder=self._recorder, on_approval=self._on_approval
        )

    def _codex_client(self) -> CodexClient:
        if self._codex is None:
            self._codex = self._codex_factory(self._config)
        return self._codex

    def _trae_agent(self) -> TraeAgent:
        if self._trae is None:
            self._trae = self._trae_factory(self._config)
        return self._trae

    # ------------------------------------------------------------------ #
    # Messaging
    # ------------------------------------------------------------------ #

    async def send_message(
        self,
        text: str,
        working_directory: str | None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResponse:
        """Send *text* to the first available backend."""
        return await self._dispatch(text, working_directory, on_progress, session=False)

    async def send_message_session(
        self,
        text: str,
        working_directory: str | None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResponse:
        """Session-aware variant.

        On Trae the message continues a remote session that is waiting
        for input, or starts a new one.  Codex threads already persist
        per working directory, so there it behaves like ``send_message``.
        """
        return await self._dispatch(text, working_directory, on_progress, session=True)

    async def _dispatch(
        self,
        text: str,
        working_directory: str | None,
        on_progress: ProgressCallback | None,
        *,
        session: bool,
    ) -> AgentResponse:
        if not working_directory or not working_directory.strip():
            return AgentResponse.failed(_NO_WORKING_DIRECTORY_TEXT, kind=NO_WORKING_DIRECTORY)
        if not Path(working_directory).is_dir():
            return AgentResponse.failed(
                f"Working directory does not exist: {working_directory}",
                kind=NO_WORKING_DIRECTORY,
            )
        if self._disposed:
            return AgentResponse.failed("Agent bridge has been disposed", kind=DisposedError.kind)

        self._record(
            RequestStartEvent(
                ts="",
                seq=0,
                backend=self._config.backend.value,
                working_directory=working_directory,
                session=session,
            )
        )

        order = self._config.backend_order
        reasons: list[str] = []
        for index, backend in enumerate(order):
            try:
                if backend is Backend.CODEX:
                    response = await self._run_codex(text, working_directory, on_progress)
                else:
                    response = await self._run_trae(
                        text, working_directory, on_progress, session=session
                    )
            except (AgentUnavailableError, DisposedError) as exc:
                reason = str(exc)
                reasons.append(f"{backend.value}: {reason}")
                logger.warning("bridge: %s unavailable: %s", backend.value, reason)
                if index + 1 < len(order):
                    await self._fallback(backend, order[index + 1], reason)
                continue
            except BridgeError as exc:
                response = AgentResponse.failed(str(exc), kind=exc.kind, backend=backend)
            except Exception as exc:
                logger.exception("bridge: unexpected error from %s", backend.value)
                response = AgentResponse.failed(
                    f"Unexpected error: {exc}", kind="internal", backend=backend
                )

            self._last_backend = backend
            self._record_done(response)
            return response

        detail = "\n  ".join(reasons)
        response = AgentResponse.failed(
            f"No agent backend is available:\n  {detail}",
            kind=AgentUnavailableError.kind,
        )
        self._record_done(response)
        return response

    async def _run_codex(
        self, text: str, working_directory: str, on_progress: ProgressCallback | None
    ) -> AgentResponse:
        client = self._codex_client()
        # Unavailability here means "try the other backend".
        await client.ensure_ready()
        try:
            turn = await client.send_message(text, working_directory, on_progress)
        except BridgeError as exc:
            return AgentResponse.failed(
                str(exc), kind=exc.kind, mode=APP_SERVER_MODE, backend=Backend.CODEX
            )
        return AgentResponse(
            success=True, content=turn.text, mode=APP_SERVER_MODE, backend=Backend.CODEX
        )

    async def _run_trae(
        self,
        text: str,
        working_directory: str,
        on_progress: ProgressCallback | None,
        *,
        session: bool,
    ) -> AgentResponse:
        agent = self._trae_agent()
        if not await agent.is_available():
            msg = "Trae agent is not available. Please ensure it is properly installed."
            raise AgentUnavailableError(msg)
        if session:
            return await agent.execute_session(text, working_directory, on_progress)
        return await agent.execute(text, working_directory, on_progress)

    async def _fallback(self, source: Backend, target: Backend, reason: str) -> None:
        self._record(
            BackendFallbackEvent(
                ts="", seq=0, from_backend=source.value, to_backend=target.value, reason=reason
            )
        )
        await self._status(f"{source.value} unavailable, falling back to {target.value}")

    # ------------------------------------------------------------------ #
    # Control
    # ------------------------------------------------------------------ #

    async def stop(self) -> None:
        """Ask whichever backend is working to stop (best effort)."""
        if self._codex is not None:
            await self._codex.interrupt_current_turn()
        if self._trae is not None:
            await self._trae.stop()

    async def respond_to_approval(
        self, request_id: int | str, decision: ApprovalDecision
    ) -> bool:
        """Forward an approval decision to the Codex backend."""
        if self._codex is None:
            logger.warning("bridge: approval %r received with no Codex client", request_id)
            return False
        try:
            return await self._codex.respond_to_approval(request_id, decision)
        except BridgeError as exc:
            logger.warning("bridge: failed to send approval %r: %s", request_id, exc)
            return False

    def reset_session(self) -> None:
        """Start a fresh Codex thread on the next message."""
        if self._codex is not None:
            self._codex.reset_thread()

    async def set_backend(self, backend: Backend, fallback: bool | None = None) -> None:
        """Switch the preferred backend, tearing down both backends."""
        await self._dispose_backends()
        update: dict[str, Any] = {"backend": Backend(backend)}
        if fallback is not None:
            update["fallback"] = fallback
        self._config = self._config.model_copy(update=update)
        self._disposed = False
        logger.info("bridge: preferred backend set to %s", self._config.backend.value)
        await self._status(f"Backend set to {self._config.backend.value}")

    async def get_info(self) -> dict[str, Any]:
        """Describe the configured backends and whether each one is usable."""
        codex = self._codex_client()
        trae = self._trae_agent()
        codex_available = await codex.is_available()
        trae_available = await trae.is_available()
        return {
            "backend": self._config.backend.value,
            "fallback": self._config.fallback,
            "codex": {
                "available": codex_available,
                "path": codex.executable.path,
                "source": codex.executable.source,
                "state": codex.state.value,
                "thread_id": codex.thread_id,
            },
            "trae": {
                "available": trae_available,
                "path": trae.executable.path,
                "source": trae.executable.source,
                "agent_dir": str(trae.settings.root),
                "config_file": str(trae.settings.resolved_config_file),
                "config": await trae.get_info() if trae_available else None,
            },
        }

    async def dispose(self) -> None:
        """Tear down both backends. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        await self._dispose_backends()

    async def _dispose_backends(self) -> None:
        codex, self._codex = self._codex, None
        trae, self._trae = self._trae, None
        if codex is not None:
            await codex.dispose()
        if trae is not None:
            await trae.dispose()

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #

    def _record(self, event: Any) -> None:
        if self._recorder is not None:
            self._recorder.record(event)

    def _record_done(self, response: AgentResponse) -> None:
        self._record(
            RequestDoneEvent(
                ts="",
                seq=0,
                backend=response.backend.value if response.backend else None,
                mode=response.mode,
                success=response.success,
                error_kind=response.error_kind,
            )
        )

    async def _status(self, text: str) -> None:
        self._record(StatusEvent(ts="", seq=0, component="bridge", status=text))
        if self._on_status is None:
            return
        try:
            await self._on_status(text)
        except Exception as exc:
            logger.warning("bridge: status callback failed: %s", exc)
