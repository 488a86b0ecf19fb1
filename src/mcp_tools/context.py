"""Request-scoped context and results for tool calls."""

from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class ToolCallContext(BaseModel):
    """
    Context of one tool invocation.

    Passed explicitly through ``call_tool`` so that concurrent chats never
    share mutable state.
    """
    chat_id: Optional[Union[int, str]] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None


class ToolCallResult(BaseModel):
    """Result of a tool call in MCP content-block form."""
    content: list[dict[str, Any]] = Field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_text(cls, text: str, is_error: bool = False) -> "ToolCallResult":
        return cls(content=[{"type": "text", "text": text}], is_error=is_error)

    @property
    def text(self) -> str:
        """Concatenated text blocks."""
        return "\n".join(
            block["text"] for block in self.content
            if block.get("type") == "text" and isinstance(block.get("text"), str)
        )
