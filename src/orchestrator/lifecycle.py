"""MCP server lifecycle orchestration.

Installs and uninstalls servers, drives status transitions, and connects
the registry, sandbox, tool aggregator and analysis pipeline.
"""

import asyncio
import re
import uuid
from typing import Optional

from event_bus import EventBus
from mcp_registry import Registry
from mcp_sandbox import SandboxRuntime
from mcp_tools import RemoteToolSource, ToolAggregator
from oauth_broker import OAuthBroker, map_tokens_to_env
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.logging import bind_context, get_logger
from shared.models import (
    AuthorizationServerMetadata,
    InstallRequest,
    OAuthClientInfo,
    ProtectedResourceMetadata,
    ServerConfig,
    ServerRecord,
    ServerStatus,
    ServerType,
    TokenSet,
)
from tool_analysis import AnalysisPipeline

from orchestrator.sync import ExternalClientSync, LoggingClientSync

logger = get_logger(__name__)

DISPLAY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9\-\s]{1,63}$")

# Allowed status transitions; uninstall is handled separately and is terminal
TRANSITIONS: dict[ServerStatus, frozenset[ServerStatus]] = {
    ServerStatus.INSTALLING: frozenset({
        ServerStatus.OAUTH_PENDING, ServerStatus.INSTALLED, ServerStatus.FAILED,
    }),
    ServerStatus.OAUTH_PENDING: frozenset({ServerStatus.INSTALLED, ServerStatus.FAILED}),
    ServerStatus.INSTALLED: frozenset({ServerStatus.FAILED}),
    ServerStatus.FAILED: frozenset(),
}


def check_transition(current: ServerStatus, target: ServerStatus) -> None:
    """
    Validate a status transition.

    Raises:
        ValidationError: If the transition is not allowed
    """
    if target not in TRANSITIONS[current]:
        raise ValidationError(
            f"Illegal status transition {current.value} -> {target.value}",
            current=current.value,
            target=target.value
        )


def revocation_endpoint(record: ServerRecord) -> Optional[str]:
    """Provider revocation endpoint from discovered metadata or static config."""
    if record.oauth_server_metadata and record.oauth_server_metadata.revocation_endpoint:
        return record.oauth_server_metadata.revocation_endpoint
    if record.oauth_config is not None:
        return record.oauth_config.revocation_endpoint
    return None


class LifecycleOrchestrator:
    """
    Owns the install/uninstall lifecycle of MCP servers.

    Sandbox starts run in tracked background tasks; a start failure after
    the record is persisted marks the record ``failed`` instead of rolling
    the write back.
    """

    def __init__(
        self,
        registry: Registry,
        sandbox: SandboxRuntime,
        aggregator: ToolAggregator,
        pipeline: AnalysisPipeline,
        events: EventBus,
        broker: OAuthBroker,
        remote: Optional[RemoteToolSource] = None,
        client_sync: Optional[ExternalClientSync] = None
    ) -> None:
        self.registry = registry
        self.sandbox = sandbox
        self.aggregator = aggregator
        self.pipeline = pipeline
        self.events = events
        self.broker = broker
        self.remote = remote
        self.client_sync = client_sync or LoggingClientSync()
        self._tasks: set[asyncio.Task] = set()

    def _validate(self, request: InstallRequest, server_type: ServerType) -> None:
        if not DISPLAY_NAME_PATTERN.match(request.display_name or ""):
            raise ValidationError(
                "Display name must be 1-63 characters of letters, digits, spaces or dashes",
                display_name=request.display_name
            )

        if request.id is not None and not request.id.strip():
            raise ValidationError("Server id must not be blank")

        if server_type == ServerType.LOCAL and not request.server_config.command:
            raise ValidationError(
                "Local server needs a command or a remote URL",
                display_name=request.display_name
            )

        if request.status not in (None, ServerStatus.INSTALLED, ServerStatus.OAUTH_PENDING):
            raise ValidationError(
                f"Cannot install with status '{request.status.value}'",
                status=request.status.value
            )

    def _map_tokens(
        self,
        server_config: ServerConfig,
        tokens: Optional[TokenSet],
        provider: Optional[str]
    ) -> ServerConfig:
        mapping = self.broker.token_mapping(provider)
        if mapping is None or tokens is None:
            return server_config

        env = map_tokens_to_env(server_config.env, tokens, mapping)
        logger.info("OAuth tokens mapped to environment", provider=provider, primary=mapping.primary)
        return server_config.model_copy(update={"env": env})

    async def install(self, request: InstallRequest) -> ServerRecord:
        """
        Install an MCP server.

        Args:
            request: Install request (catalog id optional)

        Returns:
            The persisted server record

        Raises:
            ValidationError: If the request is malformed
            ConflictError: If a server with the same id exists
        """
        if request.server_type == ServerType.REMOTE or request.remote_url:
            server_type = ServerType.REMOTE
        else:
            server_type = ServerType.LOCAL

        self._validate(request, server_type)

        server_id = request.id or str(uuid.uuid4())
        if await self.registry.get_server(server_id) is not None:
            raise ConflictError(f"MCP server '{server_id}' is already installed", server_id=server_id)

        provider = request.oauth_provider
        if provider is None and request.oauth_config is not None:
            provider = request.oauth_config.provider_name

        record = ServerRecord(
            id=server_id,
            display_name=request.display_name,
            server_config=self._map_tokens(request.server_config, request.oauth_tokens, provider),
            user_config_values=request.user_config_values,
            oauth_tokens=request.oauth_tokens,
            oauth_client_info=request.oauth_client_info,
            oauth_server_metadata=request.oauth_server_metadata,
            oauth_resource_metadata=request.oauth_resource_metadata,
            oauth_config=request.oauth_config,
            status=request.status or ServerStatus.INSTALLED,
            server_type=server_type,
            remote_url=request.remote_url,
        )

        # The store enforces id uniqueness again under its own lock
        record = await self.registry.create_server(record)
        logger.info(
            "MCP server installed",
            server_id=record.id,
            server_type=record.server_type.value,
            status=record.status.value
        )

        if record.status == ServerStatus.INSTALLED:
            self._start_in_background(record)

        await self._sync_clients()
        return record

    async def uninstall(self, server_id: str) -> None:
        """
        Uninstall a server.

        The registry record goes first (cascading to its tools), then the
        sandbox is torn down and the tools leave the aggregator.

        Raises:
            NotFoundError: If the server does not exist
        """
        record = await self.registry.get_server(server_id)
        if record is None or not await self.registry.delete_server(server_id):
            raise NotFoundError(f"MCP server '{server_id}' not found", server_id=server_id)

        if record.is_remote:
            if self.remote is not None:
                await self.remote.disconnect(server_id)
        else:
            await self.sandbox.remove_server(server_id)

        self.aggregator.unregister_server(server_id)

        if record.oauth_tokens is not None:
            await self.broker.revoke(
                server_id, revocation_endpoint(record), record.oauth_tokens.access_token
            )

        logger.info("MCP server uninstalled", server_id=server_id)
        await self._sync_clients()

    async def complete_oauth(
        self,
        server_id: str,
        tokens: TokenSet,
        client_info: Optional[OAuthClientInfo] = None,
        server_metadata: Optional[AuthorizationServerMetadata] = None,
        resource_metadata: Optional[ProtectedResourceMetadata] = None
    ) -> ServerRecord:
        """
        Store tokens for a server.

        An ``oauth_pending`` server moves to ``installed`` and is started;
        an installed server just has its tokens replaced.

        Raises:
            NotFoundError: If the server does not exist
            ValidationError: If the server is neither awaiting OAuth nor installed
        """
        record = await self.get_server(server_id)
        reauthorizing = record.status == ServerStatus.INSTALLED
        if not reauthorizing:
            check_transition(record.status, ServerStatus.INSTALLED)

        provider = record.oauth_config.provider_name if record.oauth_config else None
        changes = {
            "oauth_tokens": tokens,
            "server_config": self._map_tokens(record.server_config, tokens, provider),
            "status": ServerStatus.INSTALLED,
        }
        if client_info is not None:
            changes["oauth_client_info"] = client_info
        if server_metadata is not None:
            changes["oauth_server_metadata"] = server_metadata
        if resource_metadata is not None:
            changes["oauth_resource_metadata"] = resource_metadata

        record = await self.registry.update_server(server_id, **changes)
        logger.info("OAuth completed", server_id=server_id, reauthorized=reauthorizing)

        if not reauthorizing:
            self._start_in_background(record)
        await self._sync_clients()
        return record

    async def revoke_oauth(self, server_id: str) -> ServerRecord:
        """
        Revoke a server's tokens (best effort) and forget them.

        Raises:
            NotFoundError: If the server does not exist
        """
        record = await self.get_server(server_id)
        if record.oauth_tokens is None:
            return record

        endpoint = revocation_endpoint(record)
        await self.broker.revoke(server_id, endpoint, record.oauth_tokens.access_token)
        if record.oauth_tokens.refresh_token:
            await self.broker.revoke(server_id, endpoint, record.oauth_tokens.refresh_token)

        return await self.registry.update_server(server_id, oauth_tokens=None)

    async def mark_failed(self, server_id: str, error: str) -> None:
        """Move a server to ``failed``. Uninstalled servers are ignored."""
        record = await self.registry.get_server(server_id)
        if record is None:
            return
        if record.status == ServerStatus.FAILED:
            return

        check_transition(record.status, ServerStatus.FAILED)
        try:
            await self.registry.update_server(server_id, status=ServerStatus.FAILED)
        except NotFoundError:
            return

        self.aggregator.unregister_server(server_id)
        logger.error("MCP server failed", server_id=server_id, error=error)

    async def handle_crash(self, server_id: str, error: str) -> None:
        """Crash callback for sandboxed and remote servers; no automatic restart."""
        await self.mark_failed(server_id, error)

    async def start_installed(self) -> None:
        """Start every installed server; one failure never blocks the others."""
        records = [
            r for r in await self.registry.list_servers()
            if r.status == ServerStatus.INSTALLED
        ]
        logger.info("Starting installed MCP servers", count=len(records))
        await asyncio.gather(*(self._start(record) for record in records))

    async def list_servers(self) -> list[ServerRecord]:
        return await self.registry.list_servers()

    async def get_server(self, server_id: str) -> ServerRecord:
        """
        Get a server record.

        Raises:
            NotFoundError: If the server does not exist
        """
        record = await self.registry.get_server(server_id)
        if record is None:
            raise NotFoundError(f"MCP server '{server_id}' not found", server_id=server_id)
        return record

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for background starts. Returns False on timeout."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not pending

    def _start_in_background(self, record: ServerRecord) -> None:
        task = asyncio.create_task(self._start(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _start(self, record: ServerRecord) -> None:
        """Start one server and hand its tools to the aggregator and pipeline."""
        bind_context(server_id=record.id)
        try:
            if record.is_remote:
                if self.remote is None or not record.remote_url:
                    logger.info("No remote tool source for server", server_id=record.id)
                    return
                tools = await self.remote.connect(record)
                source = self.remote
            else:
                await self.sandbox.start_server(record)
                tools = await self.sandbox.list_tools(record.id)
                source = self.sandbox
        except Exception as e:
            logger.error("MCP server start failed", server_id=record.id, error=str(e), exc_info=True)
            await self.mark_failed(record.id, str(e))
            return

        if await self.registry.get_server(record.id) is None:
            # Uninstalled while starting
            if record.is_remote and self.remote is not None:
                await self.remote.disconnect(record.id)
            elif not record.is_remote:
                await self.sandbox.remove_server(record.id)
            return

        self.aggregator.register_tools(record.id, record.display_name, tools, source)
        self.events.publish(
            "tools-updated",
            {
                "server_id": record.id,
                "tool_count": len(tools),
                "message": f"Discovered {len(tools)} tools for {record.display_name}",
            },
        )

        try:
            await self.pipeline.submit(record.id, tools)
        except Exception as e:
            logger.error("Tool analysis submit failed", server_id=record.id, error=str(e), exc_info=True)

        await self.aggregator.refresh_analysis_cache()

    async def _sync_clients(self) -> None:
        try:
            await self.client_sync.sync(await self.registry.list_servers())
        except Exception as e:
            logger.warning("External client sync failed", error=str(e))
