"""Subprocess sandbox runtime.

Launches each local MCP server as a child process speaking MCP over stdio.
Files listed in ``inject_file`` are written to a per-server working
directory before launch.
"""

import os
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from mcp_tools.context import ToolCallContext, ToolCallResult
from mcp_tools.session import HostedSession
from shared.config import SandboxSettings
from shared.errors import NotFoundError, UpstreamUnavailable, ValidationError
from shared.logging import get_logger
from shared.models import (
    SandboxState,
    SandboxStatus,
    SandboxStatusSummary,
    ServerRecord,
    ToolDescriptor,
)

from mcp_sandbox.runtime import SandboxRuntime

logger = get_logger(__name__)

USER_CONFIG_REFERENCE = re.compile(r"\$\{user_config\.([A-Za-z0-9_-]+)\}")

CrashCallback = Callable[[str, str], Awaitable[None]]


def substitute_user_config(value: str, user_config: dict[str, Any]) -> str:
    """Replace ``${user_config.KEY}`` with the user's value for KEY."""

    def _replace(match: re.Match) -> str:
        replacement = user_config.get(match.group(1))
        if replacement is None:
            return match.group(0)
        if isinstance(replacement, list):
            return " ".join(str(v) for v in replacement)
        return str(replacement)

    return USER_CONFIG_REFERENCE.sub(_replace, value)


class ProcessSandboxRuntime(SandboxRuntime):
    """
    Runs MCP servers as stdio subprocesses.

    Args:
        settings: Sandbox settings (attempts, timeouts)
        work_dir: Root for per-server working directories
        on_crash: Awaited with ``(server_id, error)`` when a running server exits
    """

    def __init__(
        self,
        settings: Optional[SandboxSettings] = None,
        work_dir: str = "data/sandbox",
        on_crash: Optional[CrashCallback] = None
    ) -> None:
        self.settings = settings or SandboxSettings()
        self.work_dir = Path(work_dir)
        self.on_crash = on_crash
        self._sessions: dict[str, HostedSession] = {}
        self._statuses: dict[str, SandboxStatus] = {}

    def _server_params(self, record: ServerRecord):
        from mcp import StdioServerParameters

        config = record.server_config
        if not config.command:
            raise ValidationError(f"Server '{record.id}' has no command to run", server_id=record.id)

        user_config = record.user_config_values or {}
        env = {
            **os.environ,
            **{k: substitute_user_config(v, user_config) for k, v in config.env.items()},
        }
        args = [substitute_user_config(arg, user_config) for arg in config.args]

        cwd = None
        if config.inject_file:
            server_dir = self.work_dir / record.id
            server_dir.mkdir(parents=True, exist_ok=True)
            for filename, content in config.inject_file.items():
                (server_dir / Path(filename).name).write_text(content)
            cwd = str(server_dir)

        return StdioServerParameters(command=config.command, args=args, env=env, cwd=cwd)

    def _set_status(
        self,
        server_id: str,
        state: SandboxState,
        percentage: int,
        message: str,
        error: Optional[str] = None
    ) -> None:
        self._statuses[server_id] = SandboxStatus(
            state=state,
            startup_percentage=percentage,
            message=message,
            error=error,
        )

    async def start_server(self, record: ServerRecord) -> None:
        from mcp.client.stdio import stdio_client

        server_id = record.id
        self._set_status(server_id, SandboxState.INITIALIZING, 0, "Preparing server")

        try:
            params = self._server_params(record)
        except ValidationError as e:
            self._set_status(server_id, SandboxState.ERROR, 0, "Invalid server config", e.message)
            raise

        await self.remove_server(server_id, quiet=True)
        self._set_status(server_id, SandboxState.INITIALIZING, 30, "Starting server process")

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(UpstreamUnavailable),
                stop=stop_after_attempt(self.settings.connect_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                reraise=True
            ):
                with attempt:
                    session = HostedSession(
                        server_id,
                        lambda: stdio_client(params),
                        on_unexpected_exit=self._handle_exit,
                    )
                    await session.open(self.settings.startup_timeout)
        except UpstreamUnavailable as e:
            self._set_status(server_id, SandboxState.ERROR, 0, "Server failed to start", e.message)
            logger.error("MCP server failed to start", server_id=server_id, error=e.message)
            raise

        self._sessions[server_id] = session
        self._set_status(server_id, SandboxState.RUNNING, 100, "Server running")
        logger.info("MCP server started", server_id=server_id, command=record.server_config.command)

    async def remove_server(self, server_id: str, quiet: bool = False) -> None:
        session = self._sessions.pop(server_id, None)
        if not quiet:
            self._statuses.pop(server_id, None)

        if session is None:
            return

        await session.close(self.settings.shutdown_grace_seconds)
        logger.info("MCP server removed", server_id=server_id)

    async def _handle_exit(self, server_id: str, error: str) -> None:
        if server_id not in self._sessions:
            return
        self._sessions.pop(server_id, None)
        self._set_status(server_id, SandboxState.ERROR, 0, "Server exited", error)
        logger.error("MCP server exited unexpectedly", server_id=server_id, error=error)

        if self.on_crash is not None:
            await self.on_crash(server_id, error)

    def status_summary(self) -> SandboxStatusSummary:
        return SandboxStatusSummary(
            status="running",
            servers={sid: status.model_copy() for sid, status in self._statuses.items()},
        )

    async def list_tools(self, server_id: str) -> list[ToolDescriptor]:
        return await self._session(server_id).list_tools()

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        context: Optional[ToolCallContext] = None
    ) -> ToolCallResult:
        return await self._session(server_id).call_tool(tool_name, arguments)

    async def shutdown(self) -> None:
        for server_id in list(self._sessions):
            await self.remove_server(server_id)
        logger.info("Sandbox runtime stopped")

    def _session(self, server_id: str) -> HostedSession:
        session = self._sessions.get(server_id)
        if session is None:
            raise NotFoundError(f"MCP server '{server_id}' is not running", server_id=server_id)
        return session
