"""Tests for the sandbox runtime and hosted MCP sessions."""

from contextlib import asynccontextmanager

import pytest

from shared.models import ServerConfig, ServerRecord, ToolDescriptor


class TestUserConfigSubstitution:
    """Tests for ${user_config.KEY} substitution."""

    def test_substitutes_values(self):
        """Test references are replaced with the user's values."""
        from mcp_sandbox import substitute_user_config

        value = substitute_user_config(
            "--root=${user_config.root} --depth=${user_config.depth}",
            {"root": "/home/me", "depth": 3},
        )

        assert value == "--root=/home/me --depth=3"

    def test_lists_joined(self):
        """Test list values are joined with spaces."""
        from mcp_sandbox import substitute_user_config

        assert substitute_user_config("${user_config.dirs}", {"dirs": ["/a", "/b"]}) == "/a /b"

    def test_unknown_key_kept(self):
        """Test unknown references are left untouched."""
        from mcp_sandbox import substitute_user_config

        assert substitute_user_config("${user_config.nope}", {}) == "${user_config.nope}"


class TestProcessSandboxRuntime:
    """Tests for ProcessSandboxRuntime."""

    def test_server_params(self, tmp_path):
        """Test launch parameters include substitutions and injected files."""
        from mcp_sandbox import ProcessSandboxRuntime

        runtime = ProcessSandboxRuntime(work_dir=str(tmp_path))
        record = ServerRecord(
            id="notes",
            display_name="Notes",
            server_config=ServerConfig(
                command="node",
                args=["server.js", "${user_config.vault}"],
                env={"VAULT": "${user_config.vault}"},
                inject_file={"config.json": '{"debug": true}'},
            ),
            user_config_values={"vault": "/vault"},
        )

        params = runtime._server_params(record)

        assert params.command == "node"
        assert params.args == ["server.js", "/vault"]
        assert params.env["VAULT"] == "/vault"
        assert (tmp_path / "notes" / "config.json").read_text() == '{"debug": true}'
        assert str(params.cwd) == str(tmp_path / "notes")

    @pytest.mark.asyncio
    async def test_start_without_command(self, tmp_path):
        """Test a record without a command fails validation and reports an error."""
        from mcp_sandbox import ProcessSandboxRuntime
        from shared.errors import ValidationError

        runtime = ProcessSandboxRuntime(work_dir=str(tmp_path))

        with pytest.raises(ValidationError):
            await runtime.start_server(ServerRecord(id="broken", display_name="Broken"))

        status = runtime.status_summary().servers["broken"]
        assert status.state.value == "error"

    @pytest.mark.asyncio
    async def test_unknown_server(self, tmp_path):
        """Test tool operations on a server that is not running."""
        from mcp_sandbox import ProcessSandboxRuntime
        from shared.errors import NotFoundError

        runtime = ProcessSandboxRuntime(work_dir=str(tmp_path))

        with pytest.raises(NotFoundError):
            await runtime.list_tools("ghost")

        await runtime.remove_server("ghost")

    def test_status_summary_is_snapshot(self, tmp_path):
        """Test mutating a summary does not touch runtime state."""
        from mcp_sandbox import ProcessSandboxRuntime
        from shared.models import SandboxState

        runtime = ProcessSandboxRuntime(work_dir=str(tmp_path))
        runtime._set_status("fs", SandboxState.RUNNING, 100, "Server running")

        summary = runtime.status_summary()
        summary.servers["fs"].message = "changed"

        assert runtime.status_summary().servers["fs"].message == "Server running"


class TestHostedSession:
    """Tests for HostedSession."""

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        """Test a transport that fails to open surfaces as UpstreamUnavailable."""
        from mcp_tools import HostedSession
        from shared.errors import UpstreamUnavailable

        @asynccontextmanager
        async def refusing_transport():
            raise ConnectionError("connection refused")
            yield

        session = HostedSession("fs", refusing_transport)

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await session.open(timeout=1)

        assert "connection refused" in exc_info.value.message
        assert not session.connected

    @pytest.mark.asyncio
    async def test_calls_need_connection(self):
        """Test calls on an unopened session fail."""
        from mcp_tools import HostedSession
        from shared.errors import UpstreamUnavailable

        session = HostedSession("fs", lambda: None)

        with pytest.raises(UpstreamUnavailable):
            await session.list_tools()

    @pytest.mark.asyncio
    async def test_remote_needs_url(self):
        """Test a remote record without URL is rejected."""
        from mcp_tools import RemoteToolSource
        from shared.errors import ValidationError

        remote = RemoteToolSource()

        with pytest.raises(ValidationError):
            await remote.connect(ServerRecord(id="r", display_name="R"))


class _StubSession:
    """Stands in for HostedSession inside RemoteToolSource."""

    fail_listing = False
    last = None

    def __init__(self, server_id, transport_factory, on_unexpected_exit=None):
        self.server_id = server_id
        self.on_unexpected_exit = on_unexpected_exit
        self.closed = False
        self.error = None
        _StubSession.last = self

    @property
    def connected(self):
        return not self.closed

    async def open(self, timeout):
        pass

    async def list_tools(self):
        if _StubSession.fail_listing:
            from shared.errors import UpstreamUnavailable
            raise UpstreamUnavailable("listing failed", upstream="remote")
        return [ToolDescriptor(name="search")]

    async def close(self, grace=10.0):
        self.closed = True


REMOTE_RECORD = ServerRecord(id="docs", display_name="Docs", remote_url="https://docs.example.com/mcp")


class TestRemoteToolSource:
    """Tests for RemoteToolSource connection handling."""

    @pytest.fixture
    def stub_sessions(self, monkeypatch):
        import mcp_tools.remote

        _StubSession.fail_listing = False
        monkeypatch.setattr(mcp_tools.remote, "HostedSession", _StubSession)
        return _StubSession

    @pytest.mark.asyncio
    async def test_discovery_failure_closes_session(self, stub_sessions):
        """Test a session whose tool listing fails is closed and not kept."""
        from mcp_tools import RemoteToolSource
        from shared.errors import NotFoundError, UpstreamUnavailable
        from shared.models import SandboxState

        stub_sessions.fail_listing = True
        remote = RemoteToolSource()

        with pytest.raises(UpstreamUnavailable):
            await remote.connect(REMOTE_RECORD)

        assert stub_sessions.last.closed
        assert remote.statuses()["docs"].state == SandboxState.ERROR
        with pytest.raises(NotFoundError):
            await remote.list_tools("docs")

    @pytest.mark.asyncio
    async def test_connect_lists_tools(self, stub_sessions):
        """Test a successful connection reports its tools and status."""
        from mcp_tools import RemoteToolSource
        from shared.models import SandboxState

        remote = RemoteToolSource()

        tools = await remote.connect(REMOTE_RECORD)

        assert [t.name for t in tools] == ["search"]
        assert remote.statuses()["docs"].state == SandboxState.RUNNING

    @pytest.mark.asyncio
    async def test_dropped_connection_reports_crash(self, stub_sessions):
        """Test a dropped remote session is forgotten and reported."""
        from unittest.mock import AsyncMock

        from mcp_tools import RemoteToolSource
        from shared.models import SandboxState

        on_crash = AsyncMock()
        remote = RemoteToolSource(on_crash=on_crash)
        await remote.connect(REMOTE_RECORD)

        await stub_sessions.last.on_unexpected_exit("docs", "connection reset")

        on_crash.assert_awaited_once_with("docs", "connection reset")
        status = remote.statuses()["docs"]
        assert status.state == SandboxState.ERROR
        assert status.error == "connection reset"

    def test_services_route_remote_crashes(self):
        """Test the default remote source reports crashes to the orchestrator."""
        from unittest.mock import AsyncMock

        from fakes import FakeSandbox
        from mcp_registry import InMemoryRegistry
        from orchestrator import build_services
        from shared.config import Settings
        from tool_analysis import InferenceClient

        services = build_services(
            Settings(),
            registry=InMemoryRegistry(),
            sandbox=FakeSandbox(),
            inference=AsyncMock(spec=InferenceClient),
        )

        assert services.remote.on_crash == services.orchestrator.handle_crash
