"""Registry interface for MCP server and tool records."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from shared.models import ServerRecord, ToolRecord


def merge_tool(existing: Optional[ToolRecord], incoming: ToolRecord) -> ToolRecord:
    """
    Merge a discovered tool into its stored record.

    Name, description and input schema always take the incoming value.
    Classification fields keep the stored value unless the incoming one
    is set, so rediscovery never erases an analysis.
    """
    if existing is None:
        return incoming.model_copy(deep=True)

    return existing.model_copy(
        update={
            "name": incoming.name,
            "description": incoming.description,
            "input_schema": incoming.input_schema,
            "is_read": incoming.is_read if incoming.is_read is not None else existing.is_read,
            "is_write": incoming.is_write if incoming.is_write is not None else existing.is_write,
            "analyzed_at": (
                incoming.analyzed_at if incoming.analyzed_at is not None else existing.analyzed_at
            ),
            "updated_at": incoming.updated_at,
        },
        deep=True,
    )


class Registry(ABC):
    """
    Persistent store for server installations and their tools.

    Implementations enforce server id uniqueness themselves and return
    copies, so callers never mutate stored state.
    """

    async def load(self) -> None:
        """Load persisted state. No-op for stores without a backing file."""

    @abstractmethod
    async def create_server(self, record: ServerRecord) -> ServerRecord:
        """
        Persist a new server record.

        Raises:
            ConflictError: If a server with the same id exists
        """

    @abstractmethod
    async def list_servers(self) -> list[ServerRecord]:
        """List all server records."""

    @abstractmethod
    async def get_server(self, server_id: str) -> Optional[ServerRecord]:
        """Get a server record by id."""

    @abstractmethod
    async def update_server(self, server_id: str, **changes: Any) -> ServerRecord:
        """
        Update fields of a server record.

        Raises:
            NotFoundError: If the server does not exist
        """

    @abstractmethod
    async def delete_server(self, server_id: str) -> bool:
        """
        Delete a server record and all of its tools.

        Returns:
            True if the server existed
        """

    @abstractmethod
    async def upsert_tools(self, tools: list[ToolRecord]) -> list[ToolRecord]:
        """Insert or merge tool records (see ``merge_tool``)."""

    @abstractmethod
    async def get_tools_by_server(self, server_id: str) -> list[ToolRecord]:
        """List the tools of one server."""

    @abstractmethod
    async def get_tool(self, tool_id: str) -> Optional[ToolRecord]:
        """Get a tool record by id."""

    @abstractmethod
    async def list_tools(self) -> list[ToolRecord]:
        """List every tool record."""

    @abstractmethod
    async def update_tool_analysis(
        self,
        tool_id: str,
        is_read: bool,
        is_write: bool
    ) -> ToolRecord:
        """
        Store a tool's classification and stamp ``analyzed_at``.

        Raises:
            NotFoundError: If the tool does not exist
        """
