"""Persistent store for MCP server installations and their tools."""

from typing import Optional

from shared.config import RegistrySettings

from mcp_registry.base import Registry, merge_tool
from mcp_registry.file import FileRegistry
from mcp_registry.memory import InMemoryRegistry


def create_registry(settings: Optional[RegistrySettings] = None) -> Registry:
    """Build the registry backend named in settings."""
    settings = settings or RegistrySettings()
    if settings.backend == "memory":
        return InMemoryRegistry()
    if settings.backend == "file":
        return FileRegistry(settings.path)
    raise ValueError(f"Unknown registry backend: {settings.backend}")


__all__ = [
    "Registry",
    "InMemoryRegistry",
    "FileRegistry",
    "create_registry",
    "merge_tool",
]
