"""Tests for the server and tool registry."""

import asyncio

import pytest

from shared.models import ServerRecord, ServerStatus, ToolRecord, TokenSet


def _record(server_id: str = "filesystem", **kwargs) -> ServerRecord:
    return ServerRecord(id=server_id, display_name="Filesystem", **kwargs)


def _tool(server_id: str, name: str, **kwargs) -> ToolRecord:
    return ToolRecord(id=f"{server_id}::{name}", server_id=server_id, name=name, **kwargs)


class TestInMemoryRegistry:
    """Tests for InMemoryRegistry."""

    @pytest.mark.asyncio
    async def test_create_and_get_server(self):
        """Test creating and reading back a server record."""
        from mcp_registry import InMemoryRegistry

        registry = InMemoryRegistry()
        await registry.create_server(_record())

        record = await registry.get_server("filesystem")
        assert record is not None
        assert record.display_name == "Filesystem"
        assert await registry.get_server("unknown") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_conflicts(self):
        """Test that a second record with the same id is rejected."""
        from mcp_registry import InMemoryRegistry
        from shared.errors import ConflictError

        registry = InMemoryRegistry()
        await registry.create_server(_record())

        with pytest.raises(ConflictError):
            await registry.create_server(_record())

    @pytest.mark.asyncio
    async def test_concurrent_creates_one_wins(self):
        """Test that concurrent creates with the same id persist exactly one record."""
        from mcp_registry import InMemoryRegistry
        from shared.errors import ConflictError

        registry = InMemoryRegistry()
        results = await asyncio.gather(
            registry.create_server(_record()),
            registry.create_server(_record()),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(conflicts) == 1
        assert len(await registry.list_servers()) == 1

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        """Test that mutating a returned record does not change the store."""
        from mcp_registry import InMemoryRegistry

        registry = InMemoryRegistry()
        record = await registry.create_server(_record())
        record.display_name = "Changed"

        stored = await registry.get_server("filesystem")
        assert stored.display_name == "Filesystem"

    @pytest.mark.asyncio
    async def test_update_unknown_server(self):
        """Test updating a missing server raises NotFoundError."""
        from mcp_registry import InMemoryRegistry
        from shared.errors import NotFoundError

        registry = InMemoryRegistry()

        with pytest.raises(NotFoundError):
            await registry.update_server("ghost", status=ServerStatus.FAILED)

    @pytest.mark.asyncio
    async def test_delete_cascades_to_tools(self):
        """Test deleting a server removes its tools and nothing else."""
        from mcp_registry import InMemoryRegistry

        registry = InMemoryRegistry()
        await registry.create_server(_record("a"))
        await registry.create_server(_record("b"))
        await registry.upsert_tools([_tool("a", "read_file"), _tool("b", "read_file")])

        assert await registry.delete_server("a") is True
        assert await registry.delete_server("a") is False

        tools = await registry.list_tools()
        assert [t.id for t in tools] == ["b::read_file"]

    @pytest.mark.asyncio
    async def test_upsert_keeps_classification(self):
        """Test rediscovery never erases a stored analysis."""
        from mcp_registry import InMemoryRegistry

        registry = InMemoryRegistry()
        await registry.upsert_tools([_tool("fs", "read_file")])
        analyzed = await registry.update_tool_analysis("fs::read_file", True, False)
        assert analyzed.analyzed_at is not None

        merged = await registry.upsert_tools([
            _tool("fs", "read_file", description="Read a file from disk")
        ])

        assert merged[0].description == "Read a file from disk"
        assert merged[0].is_read is True
        assert merged[0].is_write is False
        assert merged[0].analyzed_at == analyzed.analyzed_at

    @pytest.mark.asyncio
    async def test_analysis_of_unknown_tool(self):
        """Test classifying a missing tool raises NotFoundError."""
        from mcp_registry import InMemoryRegistry
        from shared.errors import NotFoundError

        registry = InMemoryRegistry()

        with pytest.raises(NotFoundError):
            await registry.update_tool_analysis("fs::gone", True, True)


class TestMergeTool:
    """Tests for merge_tool."""

    def test_incoming_classification_wins_when_set(self):
        """Test that a set incoming value replaces the stored one."""
        from mcp_registry import merge_tool

        existing = _tool("fs", "write_file", is_read=True, is_write=False)
        incoming = _tool("fs", "write_file", is_write=True)

        merged = merge_tool(existing, incoming)

        assert merged.is_read is True
        assert merged.is_write is True

    def test_new_tool(self):
        """Test merging with no stored record returns the incoming one."""
        from mcp_registry import merge_tool

        incoming = _tool("fs", "read_file")
        assert merge_tool(None, incoming) == incoming


class TestFileRegistry:
    """Tests for FileRegistry."""

    @pytest.mark.asyncio
    async def test_records_survive_reload(self, tmp_path):
        """Test records and provider extras are read back from disk."""
        from mcp_registry import FileRegistry

        path = tmp_path / "registry.json"
        registry = FileRegistry(str(path))
        await registry.create_server(_record(
            oauth_tokens=TokenSet.model_validate({
                "access_token": "xoxc-1",
                "team": {"id": "T1"},
            })
        ))
        await registry.upsert_tools([_tool("filesystem", "read_file")])
        await registry.update_tool_analysis("filesystem::read_file", True, False)

        reloaded = FileRegistry(str(path))
        await reloaded.load()

        record = await reloaded.get_server("filesystem")
        assert record.oauth_tokens.access_token == "xoxc-1"
        assert record.oauth_tokens.extra == {"team": {"id": "T1"}}

        tool = await reloaded.get_tool("filesystem::read_file")
        assert tool.is_read is True
        assert tool.is_analyzed

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        """Test loading without a file yields an empty registry."""
        from mcp_registry import FileRegistry

        registry = FileRegistry(str(tmp_path / "nested" / "registry.json"))
        await registry.load()

        assert await registry.list_servers() == []

    def test_create_registry_backend(self, tmp_path):
        """Test the backend is chosen from settings."""
        from mcp_registry import FileRegistry, InMemoryRegistry, create_registry
        from shared.config import RegistrySettings

        memory = create_registry(RegistrySettings(backend="memory"))
        file = create_registry(RegistrySettings(backend="file", path=str(tmp_path / "r.json")))

        assert type(memory) is InMemoryRegistry
        assert isinstance(file, FileRegistry)
