"""Orchestrator.

Owns the MCP server lifecycle, wires the long-lived services together and
serves the host's HTTP API.
"""

from orchestrator.lifecycle import LifecycleOrchestrator, check_transition
from orchestrator.services import Services, build_services
from orchestrator.sync import ExternalClientSync, LoggingClientSync

__all__ = [
    "LifecycleOrchestrator",
    "check_transition",
    "Services",
    "build_services",
    "ExternalClientSync",
    "LoggingClientSync",
]
