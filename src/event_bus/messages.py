"""Closed set of messages published on the event bus.

Every message is ``{"type": <tag>, "payload": {...}}``. The tag selects the
payload model; anything outside this set is rejected at publish time.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationError
from shared.models import (
    AnalysisProgress,
    AvailableTool,
    ModelDownloadProgress,
    SandboxStatus,
)


class SandboxStatusPayload(BaseModel):
    """Heartbeat payload: runtime status plus the UI tool list."""
    status: str
    servers: dict[str, SandboxStatus] = Field(default_factory=dict)
    available_tools: list[AvailableTool] = Field(default_factory=list)


class ToolsUpdatedPayload(BaseModel):
    server_id: str
    tool_count: int = 0
    message: str = ""


class ChatToolsUpdatedPayload(BaseModel):
    chat_id: Union[int, str]
    selected_tools: Optional[list[str]] = None


class ChatTitleUpdatedPayload(BaseModel):
    chat_id: Union[int, str]
    title: str


class SandboxStatusUpdate(BaseModel):
    type: Literal["sandbox-status-update"] = "sandbox-status-update"
    payload: SandboxStatusPayload


class ToolsUpdated(BaseModel):
    type: Literal["tools-updated"] = "tools-updated"
    payload: ToolsUpdatedPayload


class ToolAnalysisProgress(BaseModel):
    type: Literal["tool-analysis-progress"] = "tool-analysis-progress"
    payload: AnalysisProgress


class OllamaModelDownloadProgress(BaseModel):
    type: Literal["ollama-model-download-progress"] = "ollama-model-download-progress"
    payload: ModelDownloadProgress


class ChatToolsUpdated(BaseModel):
    type: Literal["chat-tools-updated"] = "chat-tools-updated"
    payload: ChatToolsUpdatedPayload


class ChatTitleUpdated(BaseModel):
    type: Literal["chat-title-updated"] = "chat-title-updated"
    payload: ChatTitleUpdatedPayload


Message = Annotated[
    Union[
        SandboxStatusUpdate,
        ToolsUpdated,
        ToolAnalysisProgress,
        OllamaModelDownloadProgress,
        ChatToolsUpdated,
        ChatTitleUpdated,
    ],
    Field(discriminator="type"),
]

MESSAGE_TYPES = frozenset({
    "sandbox-status-update",
    "tools-updated",
    "tool-analysis-progress",
    "ollama-model-download-progress",
    "chat-tools-updated",
    "chat-title-updated",
})

_message_adapter = TypeAdapter(Message)


def parse_message(data: Union[BaseModel, dict[str, Any]]) -> BaseModel:
    """
    Validate a message against the closed message set.

    Args:
        data: A message model or a ``{"type", "payload"}`` mapping

    Returns:
        The validated message model

    Raises:
        ValidationError: On an unknown tag or a malformed payload
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")

    try:
        return _message_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid event message: {e.error_count()} error(s)",
            message_type=data.get("type") if isinstance(data, dict) else None,
            errors=[err["msg"] for err in e.errors()],
        ) from e
