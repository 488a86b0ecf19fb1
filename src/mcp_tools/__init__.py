"""Merged tool view over all MCP servers, plus the built-in tool server."""

from mcp_tools.aggregator import AggregatedTool, ToolAggregator, ToolSource
from mcp_tools.builtin import BUILTIN_SERVER_ID, BuiltinToolServer
from mcp_tools.context import ToolCallContext, ToolCallResult
from mcp_tools.remote import RemoteToolSource
from mcp_tools.session import HostedSession

__all__ = [
    "AggregatedTool",
    "ToolAggregator",
    "ToolSource",
    "BUILTIN_SERVER_ID",
    "BuiltinToolServer",
    "ToolCallContext",
    "ToolCallResult",
    "RemoteToolSource",
    "HostedSession",
]
