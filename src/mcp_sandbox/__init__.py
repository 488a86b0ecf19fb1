"""Sandbox runtimes for local MCP servers."""

from mcp_sandbox.process import ProcessSandboxRuntime, substitute_user_config
from mcp_sandbox.runtime import SandboxRuntime

__all__ = ["SandboxRuntime", "ProcessSandboxRuntime", "substitute_user_config"]
