"""Shared utilities and base classes for the MCP host."""

from shared.models import (
    AnalysisProgress,
    InstallRequest,
    ServerRecord,
    ServerStatus,
    ServerType,
    TokenSet,
    ToolDescriptor,
    ToolRecord,
)
from shared.config import Settings, get_settings
from shared.errors import (
    ConflictError,
    MCPHostError,
    NotFoundError,
    UpstreamUnavailable,
    ValidationError,
)
from shared.logging import get_logger, setup_logging

__all__ = [
    "AnalysisProgress",
    "InstallRequest",
    "ServerRecord",
    "ServerStatus",
    "ServerType",
    "TokenSet",
    "ToolDescriptor",
    "ToolRecord",
    "Settings",
    "get_settings",
    "ConflictError",
    "MCPHostError",
    "NotFoundError",
    "UpstreamUnavailable",
    "ValidationError",
    "get_logger",
    "setup_logging",
]
