"""Sandbox runtime interface."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from mcp_tools.context import ToolCallContext, ToolCallResult
from shared.models import SandboxStatusSummary, ServerRecord, ToolDescriptor


class SandboxRuntime(ABC):
    """
    Runs local MCP servers in isolation.

    Status reads return snapshots, so they never race with start or stop.
    """

    @abstractmethod
    async def start_server(self, record: ServerRecord) -> None:
        """
        Start a server and wait until it accepts requests.

        Raises:
            ValidationError: If the record cannot be launched
            UpstreamUnavailable: If the server fails to start
        """
        pass

    @abstractmethod
    async def remove_server(self, server_id: str) -> None:
        """Stop a server and forget it. Unknown ids are a no-op."""
        pass

    @abstractmethod
    def status_summary(self) -> SandboxStatusSummary:
        """Snapshot of every server's status."""
        pass

    @abstractmethod
    async def list_tools(self, server_id: str) -> list[ToolDescriptor]:
        """Discover a running server's tools."""
        pass

    @abstractmethod
    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        context: Optional[ToolCallContext] = None
    ) -> ToolCallResult:
        """Invoke a tool on a running server."""
        pass

    async def shutdown(self) -> None:
        """Stop every server."""
        pass
