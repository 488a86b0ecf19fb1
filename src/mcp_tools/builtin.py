"""Built-in tool server.

Exposes tools that let the model manage which tools are enabled for the
current chat. Its tools carry static read/write evaluations and are never
sent through the analysis pipeline.
"""

from typing import Any, Callable, Optional, Union

from event_bus import EventBus
from shared.logging import get_logger
from shared.models import ToolAnalysisState, ToolDescriptor

from mcp_tools.aggregator import ToolAggregator
from mcp_tools.context import ToolCallContext, ToolCallResult

logger = get_logger(__name__)

BUILTIN_SERVER_ID = "builtin"
BUILTIN_SERVER_NAME = "Built-in"

ChatId = Union[int, str]

_TOOL_IDS_SCHEMA = {
    "type": "object",
    "properties": {
        "toolIds": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Tool ids, e.g. [\"filesystem::read_file\"]",
        }
    },
    "required": ["toolIds"],
}

BUILTIN_TOOLS = [
    ToolDescriptor(
        name="list_available_tools",
        description="List all available MCP tools showing which are enabled for the current chat",
        input_schema={"type": "object", "properties": {}},
    ),
    ToolDescriptor(
        name="enable_tools",
        description="Enable specific tools for use in the current chat",
        input_schema=_TOOL_IDS_SCHEMA,
    ),
    ToolDescriptor(
        name="disable_tools",
        description="Disable specific tools from the current chat",
        input_schema=_TOOL_IDS_SCHEMA,
    ),
]

STATIC_EVALUATIONS = {
    "list_available_tools": ToolAnalysisState(status="completed", is_read=True, is_write=False),
    "enable_tools": ToolAnalysisState(status="completed", is_read=False, is_write=True),
    "disable_tools": ToolAnalysisState(status="completed", is_read=False, is_write=True),
}

NO_CHAT_MESSAGE = "Error: No active chat context found. Please send a message in a chat first."


class BuiltinToolServer:
    """
    In-process tool source for chat tool selection.

    A chat's selection of ``None`` means every tool is enabled.
    """

    def __init__(self, aggregator: ToolAggregator, events: EventBus) -> None:
        self.aggregator = aggregator
        self.events = events
        self._selections: dict[ChatId, Optional[list[str]]] = {}
        self._handlers: dict[str, Callable[[ChatId, dict[str, Any]], ToolCallResult]] = {
            "list_available_tools": self._list_available_tools,
            "enable_tools": self._enable_tools,
            "disable_tools": self._disable_tools,
        }

    def register(self) -> None:
        """Add the built-in tools to the aggregator."""
        self.aggregator.register_tools(
            BUILTIN_SERVER_ID,
            BUILTIN_SERVER_NAME,
            BUILTIN_TOOLS,
            self,
            static_analysis=STATIC_EVALUATIONS,
        )

    def get_selected_tools(self, chat_id: ChatId) -> Optional[list[str]]:
        selection = self._selections.get(chat_id)
        return list(selection) if selection is not None else None

    def set_selected_tools(self, chat_id: ChatId, tool_ids: Optional[list[str]]) -> None:
        """Replace a chat's selection and broadcast it."""
        self._selections[chat_id] = list(dict.fromkeys(tool_ids)) if tool_ids is not None else None
        self.events.publish(
            "chat-tools-updated",
            {"chat_id": chat_id, "selected_tools": self._selections[chat_id]},
        )

    def add_selected_tools(self, chat_id: ChatId, tool_ids: list[str]) -> list[str]:
        current = self.get_selected_tools(chat_id)
        if current is None:
            current = list(self.aggregator.get_all_tools())
        updated = list(dict.fromkeys([*current, *tool_ids]))
        self.set_selected_tools(chat_id, updated)
        return updated

    def remove_selected_tools(self, chat_id: ChatId, tool_ids: list[str]) -> list[str]:
        current = self.get_selected_tools(chat_id)
        if current is None:
            current = list(self.aggregator.get_all_tools())
        removed = set(tool_ids)
        updated = [tid for tid in current if tid not in removed]
        self.set_selected_tools(chat_id, updated)
        return updated

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        context: Optional[ToolCallContext] = None
    ) -> ToolCallResult:
        handler = self._handlers.get(tool_name)
        if handler is None:
            return ToolCallResult.from_text(f"Error: Unknown tool '{tool_name}'", is_error=True)

        if context is None or context.chat_id is None:
            return ToolCallResult.from_text(NO_CHAT_MESSAGE, is_error=True)

        return handler(context.chat_id, arguments)

    def _list_available_tools(self, chat_id: ChatId, arguments: dict[str, Any]) -> ToolCallResult:
        tools = self.aggregator.available_tools()
        selection = self.get_selected_tools(chat_id)
        selected = set(selection) if selection is not None else {t.id for t in tools}

        by_server: dict[str, list[str]] = {}
        counts: dict[str, list[int]] = {}
        for tool in tools:
            mark = "✓" if tool.id in selected else "✗"
            flags = ""
            if tool.analysis.is_read is not None:
                flags = f" [{'R' if tool.analysis.is_read else ''}{'W' if tool.analysis.is_write else ''}]"
            line = f"  {mark} {tool.name}{flags}: {tool.description or 'No description'}"
            by_server.setdefault(tool.server_name, []).append(line)
            enabled, total = counts.get(tool.server_name, [0, 0])
            counts[tool.server_name] = [enabled + (tool.id in selected), total + 1]

        sections = [
            f"**{name}** ({counts[name][0]}/{counts[name][1]} enabled)\n" + "\n".join(lines)
            for name, lines in by_server.items()
        ]

        if selection is None:
            summary = "All tools are currently enabled (default)"
        else:
            summary = f"{len(selected)} out of {len(tools)} tools enabled"

        return ToolCallResult.from_text(f"{summary}\n\n" + "\n\n".join(sections))

    def _enable_tools(self, chat_id: ChatId, arguments: dict[str, Any]) -> ToolCallResult:
        tool_ids = arguments.get("toolIds")
        if not isinstance(tool_ids, list):
            return ToolCallResult.from_text("Error: toolIds must be an array of tool IDs", is_error=True)

        updated = self.add_selected_tools(chat_id, tool_ids)
        logger.info("Tools enabled", chat_id=chat_id, count=len(tool_ids))
        return ToolCallResult.from_text(
            f"Successfully enabled {len(tool_ids)} tool(s). Total enabled: {len(updated)}"
        )

    def _disable_tools(self, chat_id: ChatId, arguments: dict[str, Any]) -> ToolCallResult:
        tool_ids = arguments.get("toolIds")
        if not isinstance(tool_ids, list):
            return ToolCallResult.from_text("Error: toolIds must be an array of tool IDs", is_error=True)

        updated = self.remove_selected_tools(chat_id, tool_ids)
        logger.info("Tools disabled", chat_id=chat_id, count=len(tool_ids))
        return ToolCallResult.from_text(
            f"Successfully disabled {len(tool_ids)} tool(s). Remaining enabled: {len(updated)}"
        )
