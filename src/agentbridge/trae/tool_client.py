"""MCP client for the Trae agent's companion tool server."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from collections import deque
from typing import IO, Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import Implementation, ListRootsResult, Root, TextContent

from agentbridge.config.models import TraeSettings
from agentbridge.constants import (
    AGENT_TAG_ENV,
    CLIENT_NAME,
    CLIENT_VERSION,
    STDERR_TAIL_LINES,
    UTF8_ENV,
)
from agentbridge.errors import (
    AgentUnavailableError,
    BridgeTimeoutError,
    EmptyResultError,
    ToolCallError,
    TransportError,
)
from agentbridge.helpers import format_stderr_preview, record_error
from agentbridge.process.launcher import build_env, venv_executable
from agentbridge.session.recorder import SessionRecorder

logger = logging.getLogger(__name__)

#: Seconds allowed for the server to shut down after stdin closes.
_CLOSE_WAIT = 5.0


def server_python(settings: TraeSettings) -> str:
    """Interpreter used to run the tool server."""
    if settings.python_path:
        return settings.python_path
    return str(venv_executable(settings.root / ".venv", "python"))


class ToolSessionClient:
    """Lazily connected, cached MCP session with the Trae tool server.

    The ``stdio_client`` and ``ClientSession`` context managers are
    entered and exited by a single owner task, which keeps the session
    open until ``close()`` is called.  A connection only counts as
    established when *required_tool* is among the listed tools.
    """

    def __init__(
        self,
        settings: TraeSettings,
        *,
        required_tool: str | None = None,
        recorder: SessionRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._required_tool = required_tool or settings.run_tool
        self._recorder = recorder

        self._session: ClientSession | None = None
        self._tools: frozenset[str] = frozenset()
        self._owner: asyncio.Task[None] | None = None
        self._connecting: asyncio.Task[bool] | None = None
        self._closing: asyncio.Event | None = None
        self._errlog: IO[str] | None = None
        self.last_error: str | None = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    @property
    def tools(self) -> frozenset[str]:
        return self._tools

    def server_parameters(self) -> StdioServerParameters:
        return StdioServerParameters(
            command=server_python(self._settings),
            args=[str(self._settings.resolved_server_script)],
            env=build_env({**UTF8_ENV, "PYTHONUNBUFFERED": "1", AGENT_TAG_ENV: "trae"}),
            cwd=str(self._settings.root),
        )

    # ------------------------------------------------------------------ #
    # Connection
    # ------------------------------------------------------------------ #

    async def connect(self) -> bool:
        """Connect if needed; concurrent callers share one attempt.

        Returns ``False`` on any failure, with the reason in ``last_error``.
        Failures are not cached: the next call tries again.
        """
        if self._session is not None:
            return True
        if self._connecting is None:
            self._connecting = asyncio.create_task(self._connect())
        task = self._connecting
        try:
            return await asyncio.shield(task)
        finally:
            if self._connecting is task and task.done():
                self._connecting = None

    async def _connect(self) -> bool:
        if self._owner is not None or self._errlog is not None:
            # The previous session ended on its own; release its task and stderr log.
            await self.close()
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[bool] = loop.create_future()
        self._closing = asyncio.Event()
        self._errlog = tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace")
        self._owner = asyncio.create_task(self._own_session(ready, self._closing, self._errlog))
        logger.debug(
            "trae: connecting tool server python=%s script=%s",
            server_python(self._settings),
            self._settings.resolved_server_script,
        )

        try:
            connected = await asyncio.wait_for(
                asyncio.shield(ready), timeout=self._settings.connect_timeout
            )
        except TimeoutError:
            self._fail(f"tool server did not connect within {self._settings.connect_timeout:g}s")
            connected = False

        if not connected:
            owner = self._owner
            if owner is not None and not owner.done():
                owner.cancel()
            await self.close()
            return False
        logger.info("trae: tool server connected (%d tools)", len(self._tools))
        return True

    async def _own_session(
        self, ready: asyncio.Future[bool], closing: asyncio.Event, errlog: IO[str]
    ) -> None:
        try:
            async with stdio_client(self.server_parameters(), errlog=errlog) as (read, write):
                async with ClientSession(
                    read,
                    write,
                    list_roots_callback=self._list_roots,
                    client_info=Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
                ) as session:
                    await session.initialize()
                    listed = await session.list_tools()
                    self._tools = frozenset(tool.name for tool in listed.tools)
                    if self._required_tool not in self._tools:
                        self._fail(f"tool server does not provide '{self._required_tool}'")
                        _settle(ready, False)
                        return
                    self._session = session
                    _settle(ready, True)
                    await closing.wait()
        except asyncio.CancelledError:
            _settle(ready, False)
            raise
        except Exception as exc:
            self._fail(f"tool server connection failed: {exc}")
            _settle(ready, False)
        finally:
            self._session = None

    async def _list_roots(self, context: Any) -> ListRootsResult:
        root = self._settings.root.resolve()
        return ListRootsResult(roots=[Root(uri=root.as_uri(), name=root.name or str(root))])

    async def close(self) -> None:
        """Shut the session down and stop the server process. Idempotent."""
        owner, self._owner = self._owner, None
        closing, self._closing = self._closing, None
        self._session = None
        if closing is not None:
            closing.set()
        if owner is not None and owner is not asyncio.current_task():
            _, pending = await asyncio.wait({owner}, timeout=_CLOSE_WAIT)
            if pending:
                logger.warning("trae: tool server did not shut down, cancelling")
                owner.cancel()
            await asyncio.gather(owner, return_exceptions=True)
        errlog, self._errlog = self._errlog, None
        if errlog is not None:
            errlog.close()

    def stderr_tail(self) -> str:
        """Last few lines the server wrote to stderr."""
        if self._errlog is None:
            return ""
        try:
            self._errlog.flush()
            self._errlog.seek(0)
            return format_stderr_preview(deque(self._errlog, maxlen=STDERR_TAIL_LINES * 4))
        except (OSError, ValueError):
            return ""

    def _fail(self, reason: str) -> None:
        tail = self.stderr_tail()
        if tail:
            reason += f"\n  {tail}"
        self.last_error = reason
        record_error(self._recorder, "trae", reason, context="tool_server", logger=logger)

    # ------------------------------------------------------------------ #
    # Tool calls
    # ------------------------------------------------------------------ #

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Invoke *name* and return the concatenation of its text contents.

        Raises:
            AgentUnavailableError: Not connected.
            BridgeTimeoutError: No result within *timeout* seconds.
            ToolCallError: The server reported an error for the call.
            EmptyResultError: The call produced no text.
            TransportError: The connection broke; the session is closed.
        """
        session = self._session
        if session is None:
            msg = "Trae tool server is not connected"
            raise AgentUnavailableError(msg)

        try:
            result = await asyncio.wait_for(
                session.call_tool(name, arguments or {}), timeout=timeout
            )
        except TimeoutError as exc:
            msg = f"Tool '{name}' did not return within {timeout:g}s"
            raise BridgeTimeoutError(msg) from exc
        except McpError as exc:
            msg = f"Tool '{name}' failed: {exc}"
            raise ToolCallError(msg) from exc
        except Exception as exc:
            self._fail(f"tool call '{name}' failed: {exc}")
            await self.close()
            msg = f"Tool server connection lost during '{name}': {exc}"
            raise TransportError(msg) from exc

        text = "".join(
            item.text for item in result.content if isinstance(item, TextContent)
        )
        if result.isError:
            msg = f"Tool '{name}' reported an error: {text.strip() or 'no details'}"
            raise ToolCallError(msg)
        if not text:
            msg = f"Tool '{name}' returned no text"
            raise EmptyResultError(msg)
        return text


def _settle(future: asyncio.Future[bool], value: bool) -> None:
    if not future.done():
        future.set_result(value)
