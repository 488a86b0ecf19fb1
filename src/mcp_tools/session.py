"""MCP client session hosted in its own task.

The MCP SDK's transports are async context managers that must be exited
by the task that entered them. Each ``HostedSession`` therefore runs a
dedicated task that enters the transport and the ``ClientSession``, keeps
them open until ``close()``, and exits them itself.
"""

import asyncio
from contextlib import AsyncExitStack
from typing import Any, AsyncContextManager, Awaitable, Callable, Optional

from shared.errors import UpstreamUnavailable
from shared.logging import get_logger
from shared.models import ToolDescriptor
from shared.schema import clean_input_schema

from mcp_tools.context import ToolCallResult

logger = get_logger(__name__)

TransportFactory = Callable[[], AsyncContextManager[Any]]
ExitCallback = Callable[[str, str], Awaitable[None]]


class HostedSession:
    """
    One connected MCP server.

    Args:
        server_id: Owning server id (for logs and callbacks)
        transport_factory: Returns the SDK transport context manager
        on_unexpected_exit: Awaited with ``(server_id, error)`` if the session
            ends without ``close()`` having been requested
        ping_interval: Seconds between liveness pings while idle
    """

    def __init__(
        self,
        server_id: str,
        transport_factory: TransportFactory,
        on_unexpected_exit: Optional[ExitCallback] = None,
        ping_interval: float = 30.0
    ) -> None:
        self.server_id = server_id
        self.ping_interval = ping_interval
        self._transport_factory = transport_factory
        self._on_unexpected_exit = on_unexpected_exit
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self.session: Any = None
        self.error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.session is not None

    async def open(self, timeout: float) -> None:
        """
        Start the session task and wait for initialization.

        Raises:
            UpstreamUnavailable: If the server fails to initialize in time
        """
        self._task = asyncio.create_task(self._serve())

        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError as e:
            await self._cancel()
            raise UpstreamUnavailable(
                f"MCP server '{self.server_id}' did not initialize within {timeout}s",
                upstream="mcp-server",
                server_id=self.server_id
            ) from e

        if not self.connected:
            raise UpstreamUnavailable(
                f"MCP server '{self.server_id}' failed to start: {self.error}",
                upstream="mcp-server",
                server_id=self.server_id
            )

    async def close(self, grace: float = 10.0) -> None:
        """Ask the session task to exit, cancelling it after ``grace`` seconds."""
        self._stop.set()
        if self._task is None or self._task.done():
            return

        try:
            await asyncio.wait_for(asyncio.shield(self._task), grace)
        except asyncio.TimeoutError:
            logger.warning("MCP session did not exit in time", server_id=self.server_id)
            await self._cancel()

    async def _cancel(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _serve(self) -> None:
        from mcp import ClientSession

        was_connected = False
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._transport_factory())
                session = await stack.enter_async_context(ClientSession(streams[0], streams[1]))
                await session.initialize()

                self.session = session
                was_connected = True
                self._ready.set()

                while not self._stop.is_set():
                    try:
                        await asyncio.wait_for(self._stop.wait(), self.ping_interval)
                    except asyncio.TimeoutError:
                        await session.send_ping()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error = str(e) or type(e).__name__
            logger.error("MCP session failed", server_id=self.server_id, error=self.error)
        finally:
            self.session = None
            self._ready.set()

        if was_connected and not self._stop.is_set() and self._on_unexpected_exit:
            await self._on_unexpected_exit(self.server_id, self.error or "session closed")

    async def list_tools(self) -> list[ToolDescriptor]:
        """Discover the server's tools."""
        if not self.connected:
            raise UpstreamUnavailable(
                f"MCP server '{self.server_id}' is not connected",
                upstream="mcp-server",
                server_id=self.server_id
            )

        result = await self.session.list_tools()
        return [
            ToolDescriptor(
                name=tool.name,
                description=getattr(tool, "description", "") or "",
                input_schema=clean_input_schema(getattr(tool, "inputSchema", None)),
            )
            for tool in result.tools
        ]

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> ToolCallResult:
        """Invoke a tool on the server."""
        if not self.connected:
            raise UpstreamUnavailable(
                f"MCP server '{self.server_id}' is not connected",
                upstream="mcp-server",
                server_id=self.server_id
            )

        result = await self.session.call_tool(tool_name, arguments)
        return ToolCallResult(
            content=[
                block.model_dump(mode="json", exclude_none=True)
                if hasattr(block, "model_dump") else dict(block)
                for block in result.content
            ],
            is_error=bool(getattr(result, "isError", False)),
        )
