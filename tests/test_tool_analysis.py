"""Tests for tool classification: heuristics, inference and downloads."""

import json

import httpx
import pytest

from fakes import drain
from shared.config import OllamaSettings
from shared.models import ToolDescriptor


def _ollama(handler, events=None, **settings):
    from tool_analysis import OllamaClient

    return OllamaClient(
        OllamaSettings(host="http://ollama.test", **settings),
        events=events,
        transport=httpx.MockTransport(handler),
    )


class TestHeuristics:
    """Tests for the keyword heuristic."""

    def test_write_tool(self):
        """Test a delete tool is write and not read."""
        from tool_analysis import classify

        result = classify("deleteFile", "Delete a file from disk")

        assert result.is_read is False
        assert result.is_write is True

    def test_delete_tool_with_remove_description(self):
        """Test deleteFile described as removing a file is write and not read."""
        from tool_analysis import classify

        result = classify("deleteFile", "Removes a file")

        assert result.is_read is False
        assert result.is_write is True
        assert classify("purge", "Removes a file").is_write is True

    def test_read_tool(self):
        """Test a getter is read and not write."""
        from tool_analysis import classify

        result = classify("get_weather")

        assert result.is_read is True
        assert result.is_write is False

    def test_description_counts(self):
        """Test keywords in the description are considered."""
        from tool_analysis import classify

        result = classify("fs_tool", "Lists files and writes a summary")

        assert result.is_read is True
        assert result.is_write is True

    def test_neither(self):
        """Test a tool can be neither read nor write."""
        from tool_analysis import classify

        result = classify("ping")

        assert result.is_read is False
        assert result.is_write is False


class TestParseAnalysis:
    """Tests for parsing inference output."""

    def test_valid_response(self):
        """Test a well-formed response is used as is."""
        from tool_analysis import parse_analysis

        tools = [ToolDescriptor(name="getTodo"), ToolDescriptor(name="createTodo")]
        raw = json.dumps({
            "getTodo": {"is_read": True, "is_write": False},
            "createTodo": {"is_read": False, "is_write": True},
        })

        results = parse_analysis(raw, tools)

        assert results["getTodo"].is_read is True
        assert results["createTodo"].is_write is True

    def test_non_json_falls_back(self):
        """Test an unparsable response yields the heuristic for every tool."""
        from tool_analysis import parse_analysis

        tools = [ToolDescriptor(name="deleteFile", description="Delete a file")]

        results = parse_analysis("I think this tool deletes things", tools)

        assert results["deleteFile"].is_read is False
        assert results["deleteFile"].is_write is True

    def test_field_level_fallback(self):
        """Test a non-boolean field falls back to the heuristic alone."""
        from tool_analysis import parse_analysis

        tools = [ToolDescriptor(name="deleteFile", description="Delete a file")]
        raw = json.dumps({"deleteFile": {"is_read": True, "is_write": "yes"}})

        results = parse_analysis(raw, tools)

        assert results["deleteFile"].is_read is True
        assert results["deleteFile"].is_write is True

    def test_missing_tool_falls_back(self):
        """Test tools absent from the response are still classified."""
        from tool_analysis import parse_analysis

        tools = [ToolDescriptor(name="list_issues"), ToolDescriptor(name="create_issue")]
        raw = json.dumps({"list_issues": {"is_read": True, "is_write": False}})

        results = parse_analysis(raw, tools)

        assert set(results) == {"list_issues", "create_issue"}
        assert results["create_issue"].is_write is True


class TestDownloadThrottle:
    """Tests for download progress throttling."""

    def test_repeated_progress_suppressed(self):
        """Test only changes and completion are broadcast."""
        from tool_analysis import DownloadProgressThrottle

        throttle = DownloadProgressThrottle("phi3:3.8b")
        chunks = [
            {"status": "pulling 6a0746a1ec1a", "total": 100, "completed": 20},
            {"status": "pulling 6a0746a1ec1a", "total": 100, "completed": 20},
            {"status": "pulling 6a0746a1ec1a", "total": 100, "completed": 45},
            {"status": "pulling 6a0746a1ec1a", "total": 100, "completed": 45},
            {"status": "success"},
        ]

        updates = [u for u in (throttle.update(c) for c in chunks) if u is not None]

        assert [u.progress for u in updates] == [20, 45, 100]
        assert updates[-1].status.value == "completed"
        assert throttle.completed

    def test_progress_is_floored(self):
        """Test fractional progress rounds down."""
        from tool_analysis import normalize_pull_chunk

        status, progress = normalize_pull_chunk({"status": "pulling", "total": 3, "completed": 2})

        assert status.value == "downloading"
        assert progress == 66

    def test_verifying_status(self):
        """Test a verifying line changes status."""
        from tool_analysis import normalize_pull_chunk

        status, _ = normalize_pull_chunk({"status": "verifying sha256 digest"})

        assert status.value == "verifying"


class TestOllamaClient:
    """Tests for OllamaClient."""

    @pytest.mark.asyncio
    async def test_wait_for_model_times_out(self):
        """Test waiting for a missing model fails with UpstreamUnavailable."""
        from shared.errors import UpstreamUnavailable

        client = _ollama(lambda request: httpx.Response(200, json={}), model_wait_timeout=0.01)

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await client.analyze_tools([ToolDescriptor(name="read_file")])

        assert exc_info.value.upstream == "ollama"

    @pytest.mark.asyncio
    async def test_analyze_tools(self):
        """Test classification via the generate endpoint."""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json={
                "response": json.dumps({"read_file": {"is_read": True, "is_write": False}})
            })

        client = _ollama(handler)
        client.mark_available(client.settings.general_model)

        results = await client.analyze_tools([ToolDescriptor(name="read_file")])
        await client.close()

        assert results["read_file"].is_read is True
        assert requests[0]["format"] == "json"
        assert requests[0]["stream"] is False

    @pytest.mark.asyncio
    async def test_generate_error_status(self):
        """Test a failing generate surfaces as UpstreamUnavailable."""
        from shared.errors import UpstreamUnavailable

        client = _ollama(lambda request: httpx.Response(500))
        client.mark_available(client.settings.general_model)

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await client.generate("hello")
        await client.close()

        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_non_object_body_is_unavailable(self):
        """Test a JSON body that is not an object fails as UpstreamUnavailable."""
        from shared.errors import UpstreamUnavailable

        client = _ollama(lambda request: httpx.Response(200, json=[1]))
        client.mark_available(client.settings.general_model)

        with pytest.raises(UpstreamUnavailable):
            await client.analyze_tools([ToolDescriptor(name="deleteFile")])

        with pytest.raises(UpstreamUnavailable):
            await client.list_models()
        await client.close()

    @pytest.mark.asyncio
    async def test_chat_title_stripped(self):
        """Test generated titles lose surrounding quotes."""

        def handler(request):
            return httpx.Response(200, json={"response": ' "Planning a Trip to Rome" '})

        client = _ollama(handler)
        client.mark_available(client.settings.general_model)

        title = await client.generate_chat_title(["Let's plan a trip to Rome"])
        await client.close()

        assert title == "Planning a Trip to Rome"

    @pytest.mark.asyncio
    async def test_pull_broadcasts_throttled_progress(self):
        """Test a pull stream produces one event per change."""
        from event_bus import EventBus

        lines = [
            {"status": "pulling manifest"},
            {"status": "pulling abc", "total": 100, "completed": 20},
            {"status": "pulling abc", "total": 100, "completed": 20},
            {"status": "pulling abc", "total": 100, "completed": 45},
            {"status": "success"},
        ]
        body = "\n".join(json.dumps(line) for line in lines).encode()

        def handler(request):
            assert request.url.path == "/api/pull"
            return httpx.Response(200, content=body)

        events = EventBus()
        subscription = events.subscribe()
        client = _ollama(handler, events=events)

        await client.pull("phi3:3.8b")
        await client.close()

        messages = drain(subscription)
        payloads = [m["payload"] for m in messages]
        assert all(m["type"] == "ollama-model-download-progress" for m in messages)
        assert [p["progress"] for p in payloads] == [20, 45, 100]
        assert payloads[-1]["status"] == "completed"
        assert client.is_available("phi3:3.8b")

    @pytest.mark.asyncio
    async def test_pull_failure_broadcasts_error(self):
        """Test a failed pull broadcasts an error and re-raises."""
        from event_bus import EventBus
        from shared.errors import UpstreamUnavailable

        events = EventBus()
        subscription = events.subscribe()
        client = _ollama(lambda request: httpx.Response(500), events=events)

        with pytest.raises(UpstreamUnavailable):
            await client.pull("phi3:3.8b")
        await client.close()

        messages = drain(subscription)
        assert messages[-1]["payload"]["status"] == "error"
        assert not client.is_available("phi3:3.8b")

    @pytest.mark.asyncio
    async def test_ensure_models_marks_installed(self):
        """Test installed models become available without a download."""

        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "phi3:3.8b"}]})

        client = _ollama(handler)
        await client.ensure_models_available()
        await client.close()

        assert client.is_available("phi3:3.8b")
