"""Tests for the background tool analysis pipeline."""

from unittest.mock import AsyncMock

import pytest

from fakes import drain
from shared.models import ToolAnalysisResult, ToolDescriptor


def _fake_inference():
    """Inference stub that classifies everything as read-only."""
    from tool_analysis import InferenceClient

    async def analyze(tools):
        return {t.name: ToolAnalysisResult(is_read=True, is_write=False) for t in tools}

    inference = AsyncMock(spec=InferenceClient)
    inference.analyze_tools.side_effect = analyze
    return inference


def _pipeline(inference):
    from event_bus import EventBus
    from mcp_registry import InMemoryRegistry
    from tool_analysis import AnalysisPipeline

    registry = InMemoryRegistry()
    events = EventBus()
    return AnalysisPipeline(registry, inference, events), registry, events


TOOLS = [
    ToolDescriptor(name="read_file", description="Read a file"),
    ToolDescriptor(name="write_file", description="Write a file"),
    ToolDescriptor(name="list_directory", description="List a directory"),
]


class TestAnalysisPipeline:
    """Tests for AnalysisPipeline."""

    @pytest.mark.asyncio
    async def test_run_classifies_every_tool(self):
        """Test a run ends in completed with every tool analyzed."""
        inference = _fake_inference()
        pipeline, registry, events = _pipeline(inference)
        subscription = events.subscribe(buffer=100)

        task = await pipeline.submit("filesystem", TOOLS)
        await task

        payloads = [m["payload"] for m in drain(subscription)]
        assert payloads[0]["phase"] == "started"
        assert payloads[0]["total_tools"] == 3
        assert payloads[-1]["phase"] == "completed"
        assert payloads[-1]["analyzed_tools"] == 3
        assert payloads[-1]["progress"] == 100

        progress = [p["progress"] for p in payloads]
        assert progress == sorted(progress)

        records = await registry.get_tools_by_server("filesystem")
        assert len(records) == 3
        assert all(r.is_analyzed for r in records)
        assert inference.analyze_tools.await_count == 3

    @pytest.mark.asyncio
    async def test_tools_persisted_before_analysis(self):
        """Test submit stores unclassified tools before the run starts."""
        pipeline, registry, _ = _pipeline(_fake_inference())

        task = await pipeline.submit("filesystem", TOOLS)
        stored = await registry.get_tools_by_server("filesystem")
        await task

        assert {t.name for t in stored} == {"read_file", "write_file", "list_directory"}

    @pytest.mark.asyncio
    async def test_analyzed_tools_skipped(self):
        """Test resubmitting analyzed tools does no work and emits nothing."""
        inference = _fake_inference()
        pipeline, _, events = _pipeline(inference)

        await (await pipeline.submit("filesystem", TOOLS))
        subscription = events.subscribe()

        await (await pipeline.submit("filesystem", TOOLS))

        assert subscription.pending() == 0
        assert inference.analyze_tools.await_count == 3

    @pytest.mark.asyncio
    async def test_unavailable_backend_switches_to_heuristic(self):
        """Test one upstream failure sends the remaining tools to the heuristic."""
        from shared.errors import UpstreamUnavailable
        from tool_analysis import InferenceClient

        inference = AsyncMock(spec=InferenceClient)
        inference.analyze_tools.side_effect = UpstreamUnavailable("no model", upstream="ollama")
        pipeline, registry, events = _pipeline(inference)
        subscription = events.subscribe(buffer=100)

        await (await pipeline.submit("filesystem", TOOLS))

        assert inference.analyze_tools.await_count == 1

        write_file = await registry.get_tool("filesystem::write_file")
        assert write_file.is_write is True
        assert write_file.is_analyzed

        payloads = [m["payload"] for m in drain(subscription)]
        assert payloads[-1]["phase"] == "completed"
        assert payloads[-1]["analyzed_tools"] == 3

    @pytest.mark.asyncio
    async def test_uninstalled_mid_run_still_completes(self):
        """Test tools deleted during a run are reported and the run completes."""
        from shared.models import ServerRecord

        pipeline, registry, events = _pipeline(None)
        await registry.create_server(ServerRecord(id="filesystem", display_name="Filesystem"))

        async def analyze(tools):
            await registry.delete_server("filesystem")
            return {t.name: ToolAnalysisResult(is_read=True, is_write=False) for t in tools}

        pipeline.inference = AsyncMock()
        pipeline.inference.analyze_tools.side_effect = analyze
        subscription = events.subscribe(buffer=100)

        await (await pipeline.submit("filesystem", TOOLS[:1]))

        payloads = [m["payload"] for m in drain(subscription)]
        assert payloads[-1]["phase"] == "completed"
        assert payloads[-1]["analyzed_tools"] == 0
        # Progress follows tools actually classified
        assert [p["progress"] for p in payloads[:-1]] == [0, 0, 0]

    @pytest.mark.asyncio
    async def test_inference_error_falls_back_to_heuristic(self):
        """Test any inference failure classifies every tool heuristically."""
        from tool_analysis import InferenceClient

        inference = AsyncMock(spec=InferenceClient)
        inference.analyze_tools.side_effect = RuntimeError("backend exploded")
        pipeline, registry, events = _pipeline(inference)
        subscription = events.subscribe(buffer=100)

        await (await pipeline.submit("filesystem", [
            ToolDescriptor(name="deleteFile", description="Delete a file"),
            ToolDescriptor(name="read_file", description="Read a file"),
        ]))

        assert inference.analyze_tools.await_count == 1

        delete_file = await registry.get_tool("filesystem::deleteFile")
        assert delete_file.is_analyzed
        assert delete_file.is_write is True
        assert delete_file.is_read is False

        read_file = await registry.get_tool("filesystem::read_file")
        assert read_file.is_analyzed
        assert read_file.is_read is True

        payloads = [m["payload"] for m in drain(subscription)]
        assert payloads[-1]["phase"] == "completed"
        assert payloads[-1]["analyzed_tools"] == 2

    @pytest.mark.asyncio
    async def test_failed_run_classifies_remaining_tools(self):
        """Test a run that aborts still leaves every tool classified."""
        pipeline, registry, events = _pipeline(_fake_inference())
        subscription = events.subscribe(buffer=100)

        update = registry.update_tool_analysis
        calls = []

        async def flaky_update(tool_id, is_read, is_write):
            calls.append(tool_id)
            if len(calls) == 1:
                raise RuntimeError("disk full")
            return await update(tool_id, is_read, is_write)

        registry.update_tool_analysis = flaky_update

        await (await pipeline.submit("filesystem", TOOLS))

        records = await registry.get_tools_by_server("filesystem")
        assert all(r.is_analyzed for r in records)

        payloads = [m["payload"] for m in drain(subscription)]
        assert payloads[-1]["phase"] == "error"
        assert payloads[-1]["error"] == "disk full"

    @pytest.mark.asyncio
    async def test_wait_idle(self):
        """Test wait_idle returns once runs finish."""
        pipeline, _, _ = _pipeline(_fake_inference())

        await pipeline.submit("filesystem", TOOLS)

        assert await pipeline.wait_idle(timeout=5) is True

    def test_percent_floors(self):
        """Test progress percentages round down."""
        from tool_analysis.pipeline import percent

        assert percent(1, 3) == 33
        assert percent(2, 3) == 66
        assert percent(0, 0) == 100
