"""Tool aggregator.

Merges the tools of every connected MCP server, plus the built-in server,
into one view keyed by tool id. The aggregator is the single entry point
for listing tools to the model and for executing tool calls.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from mcp_registry import Registry
from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.models import (
    AvailableTool,
    ToolAnalysisState,
    ToolDescriptor,
    ToolRecord,
    make_tool_id,
)
from shared.schema import empty_object_schema, validate_schema

from mcp_tools.context import ToolCallContext, ToolCallResult

logger = get_logger(__name__)

MAX_MODEL_TOOL_NAME = 64


class ToolSource(Protocol):
    """Anything that can execute a server's tools."""

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        context: Optional[ToolCallContext] = None
    ) -> ToolCallResult:
        ...


@dataclass
class AggregatedTool:
    """A tool in the merged view."""
    id: str
    server_id: str
    server_name: str
    descriptor: ToolDescriptor
    source: ToolSource
    static_analysis: Optional[ToolAnalysisState] = None


class ToolAggregator:
    """
    Merged, id-keyed view over all tool sources.

    Tool names may collide across servers; ids never do because they carry
    the server id. Classification for the UI list comes from a cache of
    registry records refreshed by ``refresh_analysis_cache``.
    """

    def __init__(self, registry: Optional[Registry] = None) -> None:
        self.registry = registry
        self._tools: dict[str, AggregatedTool] = {}
        self._analysis: dict[str, ToolRecord] = {}

    def register_tools(
        self,
        server_id: str,
        server_name: str,
        tools: list[ToolDescriptor],
        source: ToolSource,
        static_analysis: Optional[dict[str, ToolAnalysisState]] = None
    ) -> list[str]:
        """
        Replace a server's tools in the merged view.

        Returns:
            The registered tool ids
        """
        self.unregister_server(server_id, quiet=True)

        tool_ids = []
        for tool in tools:
            tool_id = make_tool_id(server_id, tool.name)
            self._tools[tool_id] = AggregatedTool(
                id=tool_id,
                server_id=server_id,
                server_name=server_name,
                descriptor=tool,
                source=source,
                static_analysis=(static_analysis or {}).get(tool.name),
            )
            tool_ids.append(tool_id)

        logger.info("Tools registered", server_id=server_id, count=len(tool_ids))
        return tool_ids

    def unregister_server(self, server_id: str, quiet: bool = False) -> int:
        """Remove every tool of a server. Returns how many were removed."""
        tool_ids = [tid for tid, t in self._tools.items() if t.server_id == server_id]
        for tool_id in tool_ids:
            del self._tools[tool_id]
            self._analysis.pop(tool_id, None)

        if tool_ids and not quiet:
            logger.info("Tools unregistered", server_id=server_id, count=len(tool_ids))
        return len(tool_ids)

    def get_all_tools(self) -> dict[str, AggregatedTool]:
        """Full merged map of tool id to tool."""
        return dict(self._tools)

    def get_tools_by_id(self, tool_ids: list[str]) -> dict[str, AggregatedTool]:
        """Subset of the merged map; unknown ids are skipped."""
        return {tid: self._tools[tid] for tid in tool_ids if tid in self._tools}

    def get_tool(self, tool_id: str) -> Optional[AggregatedTool]:
        return self._tools.get(tool_id)

    def tools_for_model(self, tool_ids: Optional[list[str]] = None) -> list[dict[str, Any]]:
        """
        Get tool definitions formatted for LLM consumption.

        Names longer than 64 characters are truncated; ids stay intact.
        Entries without a usable name are dropped.

        Args:
            tool_ids: Restrict to these ids (None = all)

        Returns:
            List of tool definitions in function-calling format
        """
        tools = self._tools if tool_ids is None else self.get_tools_by_id(tool_ids)

        result = []
        for tool_id, tool in tools.items():
            name = getattr(tool.descriptor, "name", None)
            if not name or not isinstance(name, str):
                continue

            result.append({
                "id": tool_id,
                "type": "function",
                "function": {
                    "name": name[:MAX_MODEL_TOOL_NAME],
                    "description": tool.descriptor.description,
                    "parameters": tool.descriptor.input_schema or empty_object_schema(),
                },
            })

        return result

    async def call_tool(
        self,
        tool_id: str,
        arguments: Optional[dict[str, Any]] = None,
        context: Optional[ToolCallContext] = None
    ) -> ToolCallResult:
        """
        Execute a tool through its owning source.

        Raises:
            NotFoundError: If the tool id is unknown
            ValidationError: If arguments do not match the input schema
        """
        tool = self._tools.get(tool_id)
        if tool is None:
            raise NotFoundError(f"Tool '{tool_id}' not found", tool_id=tool_id)

        arguments = arguments or {}
        is_valid, errors = validate_schema(arguments, tool.descriptor.input_schema)
        if not is_valid:
            raise ValidationError(
                f"Invalid arguments for tool '{tool_id}'",
                tool_id=tool_id,
                errors=errors
            )

        logger.info(
            "Calling tool",
            tool_id=tool_id,
            server_id=tool.server_id,
            chat_id=context.chat_id if context else None
        )
        return await tool.source.call_tool(
            tool.server_id, tool.descriptor.name, arguments, context
        )

    async def refresh_analysis_cache(self) -> None:
        """Reload tool classifications from the registry."""
        if self.registry is None:
            return
        records = await self.registry.list_tools()
        self._analysis = {record.id: record for record in records if record.id in self._tools}

    def available_tools(self) -> list[AvailableTool]:
        """Tools in the shape exposed to the UI, with their analysis state."""
        result = []
        for tool_id, tool in self._tools.items():
            analysis = tool.static_analysis
            if analysis is None:
                record = self._analysis.get(tool_id)
                if record is not None and record.is_analyzed:
                    analysis = ToolAnalysisState(
                        status="completed",
                        is_read=record.is_read,
                        is_write=record.is_write,
                    )
                else:
                    analysis = ToolAnalysisState(status="awaiting_ollama_model")

            result.append(AvailableTool(
                id=tool_id,
                name=tool.descriptor.name,
                description=tool.descriptor.description,
                input_schema=tool.descriptor.input_schema,
                server_id=tool.server_id,
                server_name=tool.server_name,
                analysis=analysis,
            ))
        return result
