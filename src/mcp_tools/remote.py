"""Tool source for remote MCP servers reached over streamable HTTP."""

from typing import Any, Optional

from shared.config import SandboxSettings
from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.models import SandboxState, SandboxStatus, ServerRecord, ToolDescriptor

from mcp_tools.context import ToolCallContext, ToolCallResult
from mcp_tools.session import ExitCallback, HostedSession

logger = get_logger(__name__)


class RemoteToolSource:
    """
    Connections to remote MCP servers; no sandbox is involved.

    Args:
        settings: Connection timeouts
        on_crash: Awaited with ``(server_id, error)`` when a connected server drops
    """

    def __init__(
        self,
        settings: Optional[SandboxSettings] = None,
        on_crash: Optional[ExitCallback] = None
    ) -> None:
        self.settings = settings or SandboxSettings()
        self.on_crash = on_crash
        self._sessions: dict[str, HostedSession] = {}
        self._errors: dict[str, str] = {}

    def _transport_factory(self, record: ServerRecord):
        from mcp.client.streamable_http import streamablehttp_client

        headers: dict[str, str] = {}
        if record.oauth_tokens and record.oauth_tokens.access_token:
            headers["Authorization"] = f"Bearer {record.oauth_tokens.access_token}"

        url = record.remote_url
        return lambda: streamablehttp_client(url, headers=headers)

    async def connect(self, record: ServerRecord) -> list[ToolDescriptor]:
        """
        Connect to a remote server and discover its tools.

        Raises:
            ValidationError: If the record has no remote URL
            UpstreamUnavailable: If the server cannot be reached
        """
        if not record.remote_url:
            raise ValidationError(f"Remote server '{record.id}' has no remote_url")

        await self.disconnect(record.id)

        session = HostedSession(
            record.id,
            self._transport_factory(record),
            on_unexpected_exit=self._handle_exit,
        )
        try:
            await session.open(self.settings.startup_timeout)
            tools = await session.list_tools()
        except Exception as e:
            self._errors[record.id] = str(e)
            await session.close(self.settings.shutdown_grace_seconds)
            raise

        self._sessions[record.id] = session
        self._errors.pop(record.id, None)

        logger.info("Remote MCP server connected", server_id=record.id, tools=len(tools))
        return tools

    async def disconnect(self, server_id: str) -> None:
        """Close a connection. Unknown ids are ignored."""
        self._errors.pop(server_id, None)
        session = self._sessions.pop(server_id, None)
        if session is None:
            return
        await session.close(self.settings.shutdown_grace_seconds)
        logger.info("Remote MCP server disconnected", server_id=server_id)

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

    async def _handle_exit(self, server_id: str, error: str) -> None:
        if server_id not in self._sessions:
            return
        self._sessions.pop(server_id, None)
        self._errors[server_id] = error
        logger.error("Remote MCP server dropped", server_id=server_id, error=error)

        if self.on_crash is not None:
            await self.on_crash(server_id, error)

    def statuses(self) -> dict[str, SandboxStatus]:
        """Connection state of every known remote server."""
        result = {
            server_id: SandboxStatus(
                state=SandboxState.RUNNING if session.connected else SandboxState.ERROR,
                startup_percentage=100,
                message="Connected" if session.connected else "Disconnected",
                error=session.error,
            )
            for server_id, session in self._sessions.items()
        }
        for server_id, error in self._errors.items():
            result[server_id] = SandboxStatus(
                state=SandboxState.ERROR,
                message="Connection failed",
                error=error,
            )
        return result

    async def shutdown(self) -> None:
        for server_id in list(self._sessions):
            await self.disconnect(server_id)

    def _session(self, server_id: str) -> HostedSession:
        session = self._sessions.get(server_id)
        if session is None:
            raise NotFoundError(f"Remote MCP server '{server_id}' is not connected", server_id=server_id)
        return session
