"""Error taxonomy for the MCP host.

Every error raised across a component seam derives from ``MCPHostError``
so the API layer can translate it into a response with one handler.
"""

from typing import Any, Optional


class MCPHostError(Exception):
    """Base exception for all MCP host errors."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for API responses and event payloads."""
        return {
            "error": self.message,
            "error_code": self.error_code,
            **({"details": self.details} if self.details else {}),
        }


class ValidationError(MCPHostError):
    """Malformed input (install request, event payload, state transition)."""

    status_code = 422
    error_code = "VALIDATION_ERROR"


class ConflictError(MCPHostError):
    """A record with the same id already exists."""

    status_code = 409
    error_code = "CONFLICT"


class NotFoundError(MCPHostError):
    """Operation on an unknown id."""

    status_code = 404
    error_code = "NOT_FOUND"


class UpstreamUnavailable(MCPHostError):
    """The OAuth proxy or the inference backend could not be reached."""

    status_code = 502
    error_code = "UPSTREAM_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        upstream: Optional[str] = None,
        status: Optional[int] = None,
        **details: Any
    ) -> None:
        super().__init__(message, **details)
        self.upstream = upstream
        self.status = status


class PartialFailure(MCPHostError):
    """Some items of a batch were left unprocessed."""

    error_code = "PARTIAL_FAILURE"


class FatalError(MCPHostError):
    """Unexpected internal error; the current run is aborted."""

    error_code = "FATAL"
