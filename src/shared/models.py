"""Core data models for the MCP host.

This module defines the records persisted by the registry, the objects
exchanged with the OAuth proxy, and the status snapshots broadcast to
subscribers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Separates the owning server id from the tool name in a tool id
TOOL_ID_SEPARATOR = "::"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def make_tool_id(server_id: str, tool_name: str) -> str:
    """Build the canonical tool id ``{server_id}::{tool_name}``."""
    return f"{server_id}{TOOL_ID_SEPARATOR}{tool_name}"


def split_tool_id(tool_id: str) -> tuple[str, str]:
    """Split a tool id into ``(server_id, tool_name)``."""
    server_id, sep, tool_name = tool_id.partition(TOOL_ID_SEPARATOR)
    if not sep:
        return "", tool_id
    return server_id, tool_name


class ServerStatus(str, Enum):
    """Installation status of an MCP server."""
    INSTALLING = "installing"
    OAUTH_PENDING = "oauth_pending"
    INSTALLED = "installed"
    FAILED = "failed"


class ServerType(str, Enum):
    """Where an MCP server runs."""
    LOCAL = "local"
    REMOTE = "remote"


class ProviderObject(BaseModel):
    """
    Provider-shaped OAuth object.

    Known fields are typed; anything else the provider sends is kept in
    ``extra`` and written back out by ``to_wire()``.
    """
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        known = set(cls.model_fields) - {"extra"}
        extra = dict(data.get("extra") or {})
        core: dict[str, Any] = {}

        for key, value in data.items():
            if key == "extra":
                continue
            if key in known:
                core[key] = value
            else:
                extra[key] = value

        core["extra"] = extra
        return core

    def to_wire(self) -> dict[str, Any]:
        """Flatten back to the provider's JSON shape."""
        core = self.model_dump(exclude={"extra"}, exclude_none=True)
        return {**self.extra, **core}


class TokenSet(ProviderObject):
    """OAuth 2.0 token set as returned by a token endpoint."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


class OAuthClientInfo(ProviderObject):
    """OAuth client registration (static or dynamic)."""
    client_id: str
    client_secret: Optional[str] = None


class AuthorizationServerMetadata(ProviderObject):
    """RFC 8414 authorization server metadata."""
    issuer: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    scopes_supported: Optional[list[str]] = None


class ProtectedResourceMetadata(ProviderObject):
    """OAuth protected resource metadata."""
    resource: Optional[str] = None
    scopes_supported: Optional[list[str]] = None


class OAuthServerConfig(BaseModel):
    """
    OAuth configuration for one MCP server provider.

    String values may reference environment variables as
    ``process.env.NAME``; they are resolved before any network call.
    """
    name: str
    server_url: str
    auth_server_url: Optional[str] = None
    resource_metadata_url: Optional[str] = None
    client_id: str
    client_secret: Optional[str] = None
    redirect_uris: list[str] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    well_known_url: Optional[str] = None
    default_scopes: list[str] = Field(default_factory=list)
    supports_resource_metadata: bool = False
    generic_oauth: bool = False
    token_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    access_token_env_var: Optional[str] = None
    requires_proxy: bool = False
    provider_name: Optional[str] = None
    browser_auth: bool = False


class ServerConfig(BaseModel):
    """Launch configuration for a local MCP server."""
    command: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    inject_file: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")


UserConfigValue = Union[bool, int, float, str, list[str]]


class ServerRecord(BaseModel):
    """A persisted MCP server installation."""
    id: str
    display_name: str
    server_config: ServerConfig = Field(default_factory=ServerConfig)
    user_config_values: Optional[dict[str, UserConfigValue]] = None
    oauth_tokens: Optional[TokenSet] = None
    oauth_client_info: Optional[OAuthClientInfo] = None
    oauth_server_metadata: Optional[AuthorizationServerMetadata] = None
    oauth_resource_metadata: Optional[ProtectedResourceMetadata] = None
    oauth_config: Optional[OAuthServerConfig] = None
    status: ServerStatus = ServerStatus.INSTALLING
    server_type: ServerType = ServerType.LOCAL
    remote_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_remote(self) -> bool:
        return self.server_type == ServerType.REMOTE


class InstallRequest(BaseModel):
    """
    Request to install an MCP server.

    ``id`` is polymorphic: for catalog servers it is the catalog name,
    for custom servers it is omitted and a UUID is generated.
    """
    id: Optional[str] = None
    display_name: str
    server_config: ServerConfig = Field(default_factory=ServerConfig)
    user_config_values: Optional[dict[str, UserConfigValue]] = None
    oauth_config: Optional[OAuthServerConfig] = None
    oauth_tokens: Optional[TokenSet] = None
    oauth_client_info: Optional[OAuthClientInfo] = None
    oauth_server_metadata: Optional[AuthorizationServerMetadata] = None
    oauth_resource_metadata: Optional[ProtectedResourceMetadata] = None
    status: Optional[ServerStatus] = None
    server_type: Optional[ServerType] = None
    remote_url: Optional[str] = None
    oauth_provider: Optional[str] = Field(
        default=None,
        description="Browser-auth provider whose token mapping applies to this server"
    )


class ToolDescriptor(BaseModel):
    """A tool as reported by an MCP server's tools/list."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class ToolRecord(BaseModel):
    """A persisted tool with its read/write classification."""
    id: str
    server_id: str
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    is_read: Optional[bool] = None
    is_write: Optional[bool] = None
    analyzed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_descriptor(cls, server_id: str, tool: ToolDescriptor) -> "ToolRecord":
        """Unclassified record for a freshly discovered tool."""
        return cls(
            id=make_tool_id(server_id, tool.name),
            server_id=server_id,
            name=tool.name,
            description=tool.description,
            input_schema=tool.input_schema,
        )

    @property
    def is_analyzed(self) -> bool:
        return self.analyzed_at is not None


class ToolAnalysisResult(BaseModel):
    """Read/write classification of one tool."""
    is_read: bool
    is_write: bool


class SandboxState(str, Enum):
    """Runtime state of one sandboxed server."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    ERROR = "error"


class SandboxStatus(BaseModel):
    """Snapshot of one server's sandbox."""
    state: SandboxState = SandboxState.INITIALIZING
    startup_percentage: int = Field(default=0, ge=0, le=100)
    message: str = ""
    error: Optional[str] = None


class SandboxStatusSummary(BaseModel):
    """Aggregated sandbox snapshot."""
    status: str = "running"
    servers: dict[str, SandboxStatus] = Field(default_factory=dict)


class ToolAnalysisState(BaseModel):
    """Analysis state of a tool as shown to the UI."""
    status: str
    error: Optional[str] = None
    is_read: Optional[bool] = None
    is_write: Optional[bool] = None


class AvailableTool(BaseModel):
    """A tool in the shape exposed to the UI."""
    id: str
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    server_id: str
    server_name: str
    analysis: ToolAnalysisState


class AnalysisPhase(str, Enum):
    """Phase of a tool analysis run."""
    STARTED = "started"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"


class AnalysisProgress(BaseModel):
    """Progress of one server's analysis run."""
    server_id: str
    phase: AnalysisPhase
    total_tools: int = 0
    analyzed_tools: int = 0
    current_tool: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    error: Optional[str] = None


class DownloadStatus(str, Enum):
    """Normalized model download status."""
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ERROR = "error"


class ModelDownloadProgress(BaseModel):
    """Progress of one model pull."""
    model: str
    status: DownloadStatus
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
