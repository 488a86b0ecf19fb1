"""Background tool analysis pipeline.

Discovered tools are persisted unclassified right away; classification
runs afterwards in a tracked background task per submission, one tool at
a time, broadcasting progress as it goes.
"""

import asyncio
from typing import Optional

from event_bus import EventBus
from mcp_registry import Registry
from shared.errors import NotFoundError, PartialFailure, UpstreamUnavailable
from shared.logging import bind_context, clear_context, get_logger
from shared.models import (
    AnalysisPhase,
    AnalysisProgress,
    ToolAnalysisResult,
    ToolDescriptor,
    ToolRecord,
)

from tool_analysis.heuristics import classify
from tool_analysis.inference import InferenceClient

logger = get_logger(__name__)


def percent(done: int, total: int) -> int:
    """Floor percentage, 100 for an empty total."""
    if total <= 0:
        return 100
    return done * 100 // total


class AnalysisPipeline:
    """
    Classifies tools in the background.

    Already analyzed tools are skipped, so re-running on restart does no
    redundant work. Runs for different servers are independent tasks.
    """

    def __init__(
        self,
        registry: Registry,
        inference: InferenceClient,
        events: EventBus
    ) -> None:
        self.registry = registry
        self.inference = inference
        self.events = events
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_runs(self) -> int:
        return len(self._tasks)

    async def submit(
        self,
        server_id: str,
        tools: list[ToolDescriptor]
    ) -> asyncio.Task:
        """
        Persist discovered tools and schedule their classification.

        Args:
            server_id: Owning server
            tools: Tools reported by the server

        Returns:
            The background task running the analysis
        """
        records = [ToolRecord.from_descriptor(server_id, tool) for tool in tools]
        await self.registry.upsert_tools(records)

        tool_ids = [record.id for record in records]
        task = asyncio.create_task(self._run_guarded(server_id, tool_ids))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info("Tool analysis scheduled", server_id=server_id, tools=len(tool_ids))
        return task

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for outstanding runs.

        Returns:
            True if every run finished within the timeout
        """
        if not self._tasks:
            return True

        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not pending

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Await outstanding runs, bounded by ``timeout``."""
        if not await self.wait_idle(timeout):
            logger.warning("Tool analysis still running at shutdown", runs=len(self._tasks))

    def _emit(self, progress: AnalysisProgress) -> None:
        self.events.publish("tool-analysis-progress", progress)

    async def _run_guarded(self, server_id: str, tool_ids: list[str]) -> None:
        bind_context(server_id=server_id)
        try:
            await self.run(server_id, tool_ids)
        except Exception as e:
            logger.error("Tool analysis failed", server_id=server_id, error=str(e), exc_info=True)
            await self._classify_remaining(server_id, tool_ids)
            self._emit(AnalysisProgress(
                server_id=server_id,
                phase=AnalysisPhase.ERROR,
                message="Tool analysis failed",
                error=str(e),
            ))
        finally:
            clear_context()

    async def _classify_remaining(self, server_id: str, tool_ids: list[str]) -> None:
        """Heuristically classify whatever a failed run left unanalyzed."""
        wanted = set(tool_ids)
        try:
            tools = await self.registry.get_tools_by_server(server_id)
        except Exception as e:
            logger.error("Heuristic fallback skipped", server_id=server_id, error=str(e))
            return

        for tool in tools:
            if tool.id not in wanted or tool.is_analyzed:
                continue
            result = classify(tool.name, tool.description)
            try:
                await self.registry.update_tool_analysis(tool.id, result.is_read, result.is_write)
            except NotFoundError:
                logger.debug("Tool removed before heuristic fallback", tool_id=tool.id)

    async def _classify(
        self,
        tool: ToolRecord,
        use_heuristic: bool
    ) -> tuple[ToolAnalysisResult, bool]:
        """Classify one tool; returns the result and whether to stay on the heuristic."""
        if use_heuristic:
            return classify(tool.name, tool.description), True

        descriptor = ToolDescriptor(
            name=tool.name,
            description=tool.description,
            input_schema=tool.input_schema,
        )
        try:
            results = await self.inference.analyze_tools([descriptor])
        except UpstreamUnavailable as e:
            logger.warning(
                "Inference backend unavailable, classifying remaining tools heuristically",
                server_id=tool.server_id,
                error=str(e),
            )
            return classify(tool.name, tool.description), True
        except Exception as e:
            logger.error(
                "Inference failed, classifying remaining tools heuristically",
                server_id=tool.server_id,
                tool=tool.name,
                error=str(e),
                exc_info=True,
            )
            return classify(tool.name, tool.description), True

        result = results.get(tool.name)
        if result is None:
            result = classify(tool.name, tool.description)
        return result, False

    async def run(self, server_id: str, tool_ids: list[str]) -> int:
        """
        Classify every unanalyzed tool among ``tool_ids``.

        Returns:
            Number of tools classified in this run
        """
        wanted = set(tool_ids)
        pending = [
            tool
            for tool in await self.registry.get_tools_by_server(server_id)
            if tool.id in wanted and not tool.is_analyzed
        ]

        if not pending:
            logger.debug("No tools to analyze", server_id=server_id)
            return 0

        total = len(pending)
        self._emit(AnalysisProgress(
            server_id=server_id,
            phase=AnalysisPhase.STARTED,
            total_tools=total,
            message=f"Analyzing {total} tools",
        ))

        analyzed = 0
        missing: list[str] = []
        use_heuristic = False

        for tool in pending:
            self._emit(AnalysisProgress(
                server_id=server_id,
                phase=AnalysisPhase.ANALYZING,
                total_tools=total,
                analyzed_tools=analyzed,
                current_tool=tool.name,
                progress=percent(analyzed, total),
                message=f"Analyzing {tool.name}",
            ))

            result, use_heuristic = await self._classify(tool, use_heuristic)

            try:
                await self.registry.update_tool_analysis(tool.id, result.is_read, result.is_write)
                analyzed += 1
            except NotFoundError:
                # Server was uninstalled mid-run
                missing.append(tool.id)

            self._emit(AnalysisProgress(
                server_id=server_id,
                phase=AnalysisPhase.ANALYZING,
                total_tools=total,
                analyzed_tools=analyzed,
                current_tool=tool.name,
                progress=percent(analyzed, total),
                message=f"Analyzed {tool.name}",
            ))

        message = f"Analyzed {analyzed} tools"
        if missing:
            partial = PartialFailure(
                f"{len(missing)} tools left unclassified",
                server_id=server_id,
                tool_ids=missing,
            )
            logger.warning(partial.message, **partial.details)
            message = f"{message}, {partial.message}"

        self._emit(AnalysisProgress(
            server_id=server_id,
            phase=AnalysisPhase.COMPLETED,
            total_tools=total,
            analyzed_tools=analyzed,
            progress=100,
            message=message,
        ))

        logger.info("Tool analysis completed", server_id=server_id, analyzed=analyzed, total=total)
        return analyzed
