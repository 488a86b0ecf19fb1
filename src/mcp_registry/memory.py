"""In-memory registry."""

import asyncio
from typing import Any, Optional

from shared.errors import ConflictError, NotFoundError
from shared.logging import get_logger
from shared.models import ServerRecord, ToolRecord, utcnow

from mcp_registry.base import Registry, merge_tool

logger = get_logger(__name__)


class InMemoryRegistry(Registry):
    """
    Registry holding records in process memory.

    All mutations run under a single lock; ``_persist`` is called inside
    the lock after every mutation so subclasses can write through.
    """

    def __init__(self) -> None:
        self._servers: dict[str, ServerRecord] = {}
        self._tools: dict[str, ToolRecord] = {}
        self._lock = asyncio.Lock()

    async def _persist(self) -> None:
        """Write-through hook for durable subclasses."""

    async def create_server(self, record: ServerRecord) -> ServerRecord:
        async with self._lock:
            if record.id in self._servers:
                raise ConflictError(
                    f"MCP server '{record.id}' is already installed",
                    server_id=record.id
                )

            self._servers[record.id] = record.model_copy(deep=True)
            await self._persist()

        logger.info("Server record created", server_id=record.id, status=record.status.value)
        return record.model_copy(deep=True)

    async def list_servers(self) -> list[ServerRecord]:
        return [s.model_copy(deep=True) for s in self._servers.values()]

    async def get_server(self, server_id: str) -> Optional[ServerRecord]:
        record = self._servers.get(server_id)
        return record.model_copy(deep=True) if record else None

    async def update_server(self, server_id: str, **changes: Any) -> ServerRecord:
        async with self._lock:
            record = self._servers.get(server_id)
            if record is None:
                raise NotFoundError(f"MCP server '{server_id}' not found", server_id=server_id)

            updated = record.model_copy(update=changes, deep=True)
            self._servers[server_id] = updated
            await self._persist()

        return updated.model_copy(deep=True)

    async def delete_server(self, server_id: str) -> bool:
        async with self._lock:
            if server_id not in self._servers:
                return False

            del self._servers[server_id]
            tool_ids = [tid for tid, t in self._tools.items() if t.server_id == server_id]
            for tool_id in tool_ids:
                del self._tools[tool_id]
            await self._persist()

        logger.info("Server record deleted", server_id=server_id, tools_removed=len(tool_ids))
        return True

    async def upsert_tools(self, tools: list[ToolRecord]) -> list[ToolRecord]:
        merged: list[ToolRecord] = []

        async with self._lock:
            for tool in tools:
                record = merge_tool(self._tools.get(tool.id), tool)
                self._tools[tool.id] = record
                merged.append(record.model_copy(deep=True))
            await self._persist()

        return merged

    async def get_tools_by_server(self, server_id: str) -> list[ToolRecord]:
        return [
            t.model_copy(deep=True)
            for t in self._tools.values()
            if t.server_id == server_id
        ]

    async def get_tool(self, tool_id: str) -> Optional[ToolRecord]:
        record = self._tools.get(tool_id)
        return record.model_copy(deep=True) if record else None

    async def list_tools(self) -> list[ToolRecord]:
        return [t.model_copy(deep=True) for t in self._tools.values()]

    async def update_tool_analysis(
        self,
        tool_id: str,
        is_read: bool,
        is_write: bool
    ) -> ToolRecord:
        async with self._lock:
            record = self._tools.get(tool_id)
            if record is None:
                raise NotFoundError(f"Tool '{tool_id}' not found", tool_id=tool_id)

            now = utcnow()
            updated = record.model_copy(
                update={
                    "is_read": is_read,
                    "is_write": is_write,
                    "analyzed_at": now,
                    "updated_at": now,
                }
            )
            self._tools[tool_id] = updated
            await self._persist()

        return updated.model_copy(deep=True)
