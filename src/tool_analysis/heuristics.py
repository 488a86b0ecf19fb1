"""Keyword heuristic for read/write classification.

Used whenever the inference backend cannot give a usable answer.
"""

from typing import Optional

from shared.models import ToolAnalysisResult

READ_KEYWORDS = (
    "get", "list", "read", "search", "fetch", "find", "query", "retrieve",
    "show", "view", "describe", "check", "verify", "examine", "inspect",
    "status", "info", "detail", "lookup",
)

WRITE_KEYWORDS = (
    "create", "update", "delete", "add", "remove", "set", "write", "modify",
    "edit", "change", "insert", "append", "replace", "clear", "reset",
    "submit", "post", "put", "patch", "destroy", "drop", "truncate",
    "execute", "run", "apply", "commit", "save", "store",
)


def _haystack(name: str, description: Optional[str]) -> str:
    return f"{name.lower()} {(description or '').lower()}"


def infer_is_read(name: str, description: Optional[str] = None) -> bool:
    """True if name or description contains a read keyword."""
    text = _haystack(name, description)
    return any(keyword in text for keyword in READ_KEYWORDS)


def infer_is_write(name: str, description: Optional[str] = None) -> bool:
    """True if name or description contains a write keyword."""
    text = _haystack(name, description)
    return any(keyword in text for keyword in WRITE_KEYWORDS)


def classify(name: str, description: Optional[str] = None) -> ToolAnalysisResult:
    """
    Classify a tool by substring membership.

    A tool may come out as read, write, both or neither.
    """
    return ToolAnalysisResult(
        is_read=infer_is_read(name, description),
        is_write=infer_is_write(name, description),
    )
