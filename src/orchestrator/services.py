"""Service container.

Every long-lived component is built once here and started and stopped
explicitly; the API lifespan owns the container.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from event_bus import EventBus
from mcp_registry import Registry, create_registry
from mcp_sandbox import ProcessSandboxRuntime, SandboxRuntime
from mcp_tools import BuiltinToolServer, RemoteToolSource, ToolAggregator
from oauth_broker import OAuthBroker
from shared.config import Settings
from shared.logging import get_logger
from tool_analysis import AnalysisPipeline, InferenceClient, OllamaClient

from orchestrator.lifecycle import LifecycleOrchestrator
from orchestrator.sync import ExternalClientSync

logger = get_logger(__name__)


@dataclass
class Services:
    """All long-lived components of the host."""
    settings: Settings
    registry: Registry
    events: EventBus
    sandbox: SandboxRuntime
    remote: RemoteToolSource
    aggregator: ToolAggregator
    builtin: BuiltinToolServer
    inference: InferenceClient
    pipeline: AnalysisPipeline
    broker: OAuthBroker
    orchestrator: LifecycleOrchestrator
    _background: set[asyncio.Task] = field(default_factory=set)

    async def status_payload(self) -> dict[str, Any]:
        """Heartbeat payload: sandbox and remote status plus the UI tool list."""
        summary = self.sandbox.status_summary()
        servers = {**summary.servers, **self.remote.statuses()}

        await self.aggregator.refresh_analysis_cache()
        return {
            "status": summary.status,
            "servers": {sid: s.model_dump(mode="json") for sid, s in servers.items()},
            "available_tools": [
                t.model_dump(mode="json") for t in self.aggregator.available_tools()
            ],
        }

    def spawn(self, coro) -> asyncio.Task:
        """Run a coroutine in a tracked background task."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(self) -> None:
        """Load state, start the heartbeat and bring installed servers up."""
        await self.registry.load()
        self.builtin.register()
        await self.events.start(self.status_payload)

        if isinstance(self.inference, OllamaClient):
            self.spawn(self.inference.ensure_models_available())

        self.spawn(self.orchestrator.start_installed())
        logger.info("MCP host started", environment=self.settings.environment)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop everything, awaiting outstanding work with a bound."""
        logger.info("Shutting down MCP host")

        await self.orchestrator.wait_idle(timeout)
        await self.pipeline.shutdown(timeout)

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        await self.sandbox.shutdown()
        await self.remote.shutdown()
        await self.events.stop()
        await self.broker.close()
        if isinstance(self.inference, OllamaClient):
            await self.inference.close()


def build_services(
    settings: Settings,
    registry: Optional[Registry] = None,
    sandbox: Optional[SandboxRuntime] = None,
    inference: Optional[InferenceClient] = None,
    broker: Optional[OAuthBroker] = None,
    remote: Optional[RemoteToolSource] = None,
    client_sync: Optional[ExternalClientSync] = None
) -> Services:
    """
    Wire up the host's components.

    Any component may be supplied to replace the default built from
    settings.
    """
    events = EventBus(settings.events)
    registry = registry or create_registry(settings.registry)
    aggregator = ToolAggregator(registry)
    builtin = BuiltinToolServer(aggregator, events)
    inference = inference or OllamaClient(settings.ollama, events=events)
    pipeline = AnalysisPipeline(registry, inference, events)
    broker = broker or OAuthBroker(settings.oauth)

    owns_sandbox = sandbox is None
    owns_remote = remote is None
    sandbox = sandbox or ProcessSandboxRuntime(settings.sandbox)
    remote = remote or RemoteToolSource(settings.sandbox)

    orchestrator = LifecycleOrchestrator(
        registry=registry,
        sandbox=sandbox,
        aggregator=aggregator,
        pipeline=pipeline,
        events=events,
        broker=broker,
        remote=remote,
        client_sync=client_sync,
    )

    if owns_sandbox:
        sandbox.on_crash = orchestrator.handle_crash
    if owns_remote:
        remote.on_crash = orchestrator.handle_crash

    return Services(
        settings=settings,
        registry=registry,
        events=events,
        sandbox=sandbox,
        remote=remote,
        aggregator=aggregator,
        builtin=builtin,
        inference=inference,
        pipeline=pipeline,
        broker=broker,
        orchestrator=orchestrator,
    )
