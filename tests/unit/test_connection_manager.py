"""Unit tests for MCPConnectionManager with a fake MCP client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from config import AuthMode, RemoteProviderConfig
from tactus_agent.core.errors import AuthorizationRequired, NotConnected
from tactus_agent.core.tool_registry import ToolRegistry
from tactus_agent.mcp.connection_manager import (
    ConnectionState,
    MCPConnectionManager,
    format_call_result,
    tool_to_descriptor,
)
from tactus_agent.mcp.oauth import CredentialManagerAuth


def mcp_tool(name, description="A tool", properties=None, required=None):
    return SimpleNamespace(
        name=name,
        description=description,
        inputSchema={"type": "object", "properties": properties or {}, "required": required or []},
    )


def text(value):
    return SimpleNamespace(type="text", text=value)


class FakeSession:
    def __init__(self, tools=None):
        self.__aenter__ = AsyncMock(return_value=self)
        self.__aexit__ = AsyncMock(return_value=None)
        self.list_tools = AsyncMock(return_value=tools or [])
        self.call_tool_mcp = AsyncMock(
            return_value=SimpleNamespace(content=[text("ok")], isError=False)
        )


class FakeFactory:
    def __init__(self, *sessions):
        self.sessions = list(sessions)
        self.calls = []

    def __call__(self, config, headers, auth=None):
        self.calls.append((config, headers, auth))
        return self.sessions.pop(0)


def provider(provider_id="p1", **kwargs):
    kwargs.setdefault("display_name", "Docs")
    kwargs.setdefault("endpoint_url", "https://mcp.example.com/mcp")
    return RemoteProviderConfig(id=provider_id, **kwargs)


@pytest.mark.unit
class TestConversions:
    def test_tool_to_descriptor(self):
        descriptor = tool_to_descriptor(
            mcp_tool("search", properties={"q": {"type": "string"}}, required=["q"]),
            provider(),
        )
        assert descriptor.name == "remote__p1__search"
        assert descriptor.remote_name == "search"
        assert descriptor.provider_name == "Docs"
        assert descriptor.parameters["required"] == ["q"]

    def test_format_call_result_content_kinds(self):
        result = SimpleNamespace(
            content=[
                text("line one"),
                SimpleNamespace(type="image", mimeType="image/png"),
                SimpleNamespace(type="resource", resource=SimpleNamespace(uri="file:///a.txt")),
                SimpleNamespace(type="resource_link", uri="https://example.com/b"),
            ],
            isError=False,
        )
        formatted = format_call_result(result)
        assert formatted.success
        assert formatted.content == (
            "line one\n[Image: image/png]\n[Resource: file:///a.txt]\n"
            "[Resource: https://example.com/b]"
        )

    def test_format_call_result_empty_error(self):
        formatted = format_call_result(SimpleNamespace(content=[], isError=True))
        assert formatted.content == "(no content)"
        assert formatted.is_error
        assert not formatted.success


@pytest.mark.unit
class TestMCPConnectionManager:
    @pytest.mark.asyncio
    async def test_connect_discovers_tools(self):
        session = FakeSession([mcp_tool("search"), mcp_tool("fetch")])
        manager = MCPConnectionManager(client_factory=FakeFactory(session))

        tools = await manager.connect(provider())

        assert [t.name for t in tools] == ["remote__p1__search", "remote__p1__fetch"]
        assert manager.connection_state("p1") == ConnectionState.CONNECTED
        assert manager.get_connected_providers()[0].id == "p1"
        session.__aenter__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reconnect_closes_previous_session(self):
        first, second = FakeSession([mcp_tool("a")]), FakeSession([mcp_tool("b")])
        manager = MCPConnectionManager(client_factory=FakeFactory(first, second))

        await manager.connect(provider())
        await manager.connect(provider())

        first.__aexit__.assert_awaited_once()
        assert [t.remote_name for t in manager.get_all_tools()] == ["b"]

    @pytest.mark.asyncio
    async def test_failed_connect_closes_session_and_raises(self):
        session = FakeSession()
        session.list_tools.side_effect = httpx.ConnectError("refused")
        manager = MCPConnectionManager(client_factory=FakeFactory(session))

        with pytest.raises(httpx.ConnectError):
            await manager.connect(provider())
        session.__aexit__.assert_awaited_once()
        assert manager.connection_state("p1") == ConnectionState.ABSENT

    @pytest.mark.asyncio
    async def test_bearer_and_extra_headers(self):
        factory = FakeFactory(FakeSession())
        manager = MCPConnectionManager(client_factory=factory)
        await manager.connect(
            provider(
                auth_mode=AuthMode.BEARER,
                static_token="tok",
                extra_headers={"X-Team": "core"},
            )
        )
        _, headers, auth = factory.calls[0]
        assert headers == {"X-Team": "core", "Authorization": "Bearer tok"}
        assert auth is None

    @pytest.mark.asyncio
    async def test_oauth_uses_per_request_auth(self):
        credentials = AsyncMock()
        credentials.get_valid_auth_header.return_value = {"Authorization": "Bearer oauth"}
        factory = FakeFactory(FakeSession())
        manager = MCPConnectionManager(credential_manager=credentials, client_factory=factory)

        await manager.connect(provider(auth_mode=AuthMode.OAUTH))

        credentials.get_valid_auth_header.assert_awaited_once_with(
            "p1", "https://mcp.example.com/mcp"
        )
        _, headers, auth = factory.calls[0]
        assert "Authorization" not in headers
        assert isinstance(auth, CredentialManagerAuth)
        assert auth.provider_id == "p1"

    @pytest.mark.asyncio
    async def test_oauth_without_credential_manager(self):
        manager = MCPConnectionManager(client_factory=FakeFactory(FakeSession()))
        with pytest.raises(AuthorizationRequired):
            await manager.connect(provider(auth_mode=AuthMode.OAUTH))

    @pytest.mark.asyncio
    async def test_invoke_not_connected(self):
        manager = MCPConnectionManager(client_factory=FakeFactory())
        result = await manager.invoke("p1", "search", {})
        assert not result.success
        assert result.content == 'MCP Server "p1" not connected'

    @pytest.mark.asyncio
    async def test_invoke_calls_remote_tool(self):
        session = FakeSession([mcp_tool("search")])
        manager = MCPConnectionManager(client_factory=FakeFactory(session))
        await manager.connect(provider())

        result = await manager.invoke("p1", "search", {"q": "x"})

        assert result.success
        assert result.content == "ok"
        session.call_tool_mcp.assert_awaited_once_with("search", {"q": "x"})

    @pytest.mark.asyncio
    async def test_transport_failure_marks_connection_lost(self):
        session = FakeSession([mcp_tool("search")])
        session.call_tool_mcp.side_effect = httpx.ReadError("reset")
        manager = MCPConnectionManager(client_factory=FakeFactory(session))
        await manager.connect(provider())

        result = await manager.invoke("p1", "search", {})

        assert result.is_error
        assert result.content.startswith("Tool call failed:")
        assert manager.connection_state("p1") == ConnectionState.DISCONNECTED
        assert manager.get_all_tools() == []

    @pytest.mark.asyncio
    async def test_tool_error_keeps_connection(self):
        session = FakeSession([mcp_tool("search")])
        session.call_tool_mcp.side_effect = ValueError("bad arguments")
        manager = MCPConnectionManager(client_factory=FakeFactory(session))
        await manager.connect(provider())

        result = await manager.invoke("p1", "search", {})

        assert result.content == "Tool call failed: bad arguments"
        assert manager.is_connected("p1")

    @pytest.mark.asyncio
    async def test_disconnect_all(self):
        first, second = FakeSession(), FakeSession()
        first.__aexit__.side_effect = RuntimeError("already closed")
        manager = MCPConnectionManager(client_factory=FakeFactory(first, second))
        await manager.connect(provider("p1"))
        await manager.connect(provider("p2"))

        await manager.disconnect_all()

        second.__aexit__.assert_awaited_once()
        assert manager.connection_state("p1") == ConnectionState.ABSENT
        assert manager.connection_state("p2") == ConnectionState.ABSENT

    @pytest.mark.asyncio
    async def test_connect_enabled_collects_errors(self):
        broken = FakeSession()
        broken.__aenter__.side_effect = httpx.ConnectError("refused")
        manager = MCPConnectionManager(client_factory=FakeFactory(broken, FakeSession()))

        errors = await manager.connect_enabled(
            [provider("p1"), provider("p2"), provider("p3", enabled=False)]
        )

        assert list(errors) == ["p1"]
        assert manager.is_connected("p2")
        assert manager.connection_state("p3") == ConnectionState.ABSENT

    @pytest.mark.asyncio
    async def test_refresh_capabilities(self):
        session = FakeSession([mcp_tool("a")])
        manager = MCPConnectionManager(client_factory=FakeFactory(session))
        await manager.connect(provider())
        session.list_tools.return_value = [mcp_tool("a"), mcp_tool("b")]

        tools = await manager.refresh_capabilities("p1")

        assert [t.remote_name for t in tools] == ["a", "b"]
        with pytest.raises(NotConnected):
            await manager.refresh_capabilities("missing")

    @pytest.mark.asyncio
    async def test_registry_dispatches_to_connected_provider(self):
        session = FakeSession([mcp_tool("search")])
        manager = MCPConnectionManager(client_factory=FakeFactory(session))
        await manager.connect(provider())
        registry = ToolRegistry()
        registry.sync_remote(manager)

        result = await registry.get_invoker("remote__p1__search").invoke({})

        assert result.content == "ok"
