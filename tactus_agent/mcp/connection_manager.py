"""Sessions with remote tool providers (MCP over Streamable HTTP)."""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
from fastmcp.client import Client as FastMCPClient
from fastmcp.client.transports import StreamableHttpTransport

from config import AuthMode, RemoteProviderConfig
from tactus_agent.core.errors import AuthorizationRequired, NotConnected
from tactus_agent.core.tool_registry import format_remote_tool_name
from tactus_agent.core.types import RemoteToolCallResult, ToolDescriptor, ToolOrigin
from tactus_agent.mcp.oauth import CredentialManagerAuth, OAuthCredentialManager

logger = logging.getLogger(__name__)

ClientFactory = Callable[[RemoteProviderConfig, Dict[str, str], Optional[httpx.Auth]], Any]


class ConnectionState(str, Enum):
    ABSENT = "absent"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class RemoteConnection:
    """A live (or lost) session with one provider and its discovered tools."""

    def __init__(
        self,
        provider_id: str,
        config: RemoteProviderConfig,
        session: Any,
        capabilities: List[ToolDescriptor],
    ):
        self.provider_id = provider_id
        self.config = config
        self.session = session
        self.capabilities = capabilities
        self.connected = True


def default_client_factory(
    config: RemoteProviderConfig,
    headers: Dict[str, str],
    auth: Optional[httpx.Auth] = None,
    timeout: float = 120.0,
) -> FastMCPClient:
    transport = StreamableHttpTransport(url=config.endpoint_url, headers=headers, auth=auth)
    return FastMCPClient(transport, timeout=timeout)


def tool_to_descriptor(tool: Any, config: RemoteProviderConfig) -> ToolDescriptor:
    """Convert a tool listed by a provider into a remote descriptor."""
    schema = getattr(tool, "inputSchema", None) or {}
    parameters = {
        "type": "object",
        "properties": schema.get("properties", {}) or {},
        "required": schema.get("required", []) or [],
    }
    return ToolDescriptor(
        name=format_remote_tool_name(config.id, tool.name),
        description=getattr(tool, "description", None) or "",
        parameters=parameters,
        origin=ToolOrigin.REMOTE,
        provider_id=config.id,
        provider_name=config.display_name,
        remote_name=tool.name,
    )


def format_call_result(result: Any) -> RemoteToolCallResult:
    """Join a provider's content items into one text result."""
    parts = []
    for item in getattr(result, "content", None) or []:
        kind = getattr(item, "type", None)
        if kind == "text":
            parts.append(item.text)
        elif kind == "image":
            parts.append(f"[Image: {getattr(item, 'mimeType', 'unknown')}]")
        elif kind == "resource":
            resource = getattr(item, "resource", None)
            uri = getattr(resource, "uri", None) or getattr(item, "uri", "")
            parts.append(f"[Resource: {uri}]")
        elif kind == "resource_link":
            parts.append(f"[Resource: {getattr(item, 'uri', '')}]")

    is_error = bool(getattr(result, "isError", False))
    return RemoteToolCallResult(
        success=not is_error,
        content="\n".join(parts) or "(no content)",
        is_error=is_error,
    )


class MCPConnectionManager:
    """Owns zero or one connection per provider id."""

    def __init__(
        self,
        credential_manager: Optional[OAuthCredentialManager] = None,
        client_factory: Optional[ClientFactory] = None,
        timeout: float = 120.0,
    ):
        self.credential_manager = credential_manager
        self.timeout = timeout
        self._client_factory = client_factory or (
            lambda config, headers, auth: default_client_factory(
                config, headers, auth, timeout
            )
        )
        self._connections: Dict[str, RemoteConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        return self._locks.setdefault(provider_id, asyncio.Lock())

    def _build_headers(self, config: RemoteProviderConfig) -> Dict[str, str]:
        headers = dict(config.extra_headers)
        if config.auth_mode == AuthMode.BEARER and config.static_token:
            headers["Authorization"] = f"Bearer {config.static_token}"
        return headers

    async def _build_auth(self, config: RemoteProviderConfig) -> Optional[httpx.Auth]:
        """Per-request OAuth auth; fails early when no usable token exists."""
        if config.auth_mode != AuthMode.OAUTH:
            return None
        if self.credential_manager is None:
            raise AuthorizationRequired(
                f"Provider {config.id} uses OAuth but no credential manager is configured"
            )
        await self.credential_manager.get_valid_auth_header(config.id, config.endpoint_url)
        return CredentialManagerAuth(
            self.credential_manager, config.id, config.endpoint_url
        )

    async def _close_session(self, provider_id: str, session: Any):
        try:
            await session.__aexit__(None, None, None)
            logger.info(f"Closed client session for {provider_id}")
        except Exception as e:
            logger.error(f"Error closing client session for {provider_id}: {e}")

    async def connect(self, config: RemoteProviderConfig) -> List[ToolDescriptor]:
        """Open a session, discover tools, and store the connection."""
        async with self._lock_for(config.id):
            existing = self._connections.pop(config.id, None)
            if existing is not None:
                logger.info(f"Replacing existing connection for {config.id}")
                await self._close_session(config.id, existing.session)

            logger.info(f"Connecting to remote provider: {config.display_name} ({config.id})")
            headers = self._build_headers(config)
            auth = await self._build_auth(config)
            session = self._client_factory(config, headers, auth)

            try:
                await session.__aenter__()
                tools = await session.list_tools()
                capabilities = [tool_to_descriptor(tool, config) for tool in tools or []]
            except BaseException as e:
                logger.error(f"Failed to connect to remote provider {config.id}: {e}")
                await self._close_session(config.id, session)
                raise

            self._connections[config.id] = RemoteConnection(
                provider_id=config.id,
                config=config,
                session=session,
                capabilities=capabilities,
            )
            for descriptor in capabilities:
                logger.info(f"Registered tool: {descriptor.name}")
            logger.info(
                f"Successfully connected to {config.id} with {len(capabilities)} tools"
            )
            return list(capabilities)

    async def disconnect(self, provider_id: str):
        async with self._lock_for(provider_id):
            connection = self._connections.pop(provider_id, None)
            if connection is None:
                return
            await self._close_session(provider_id, connection.session)

    async def disconnect_all(self):
        logger.info("Shutting down remote provider connections...")
        await asyncio.gather(
            *(self.disconnect(provider_id) for provider_id in list(self._connections))
        )

    async def connect_enabled(
        self, configs: List[RemoteProviderConfig]
    ) -> Dict[str, Exception]:
        """Connect every enabled provider, returning the errors by provider id."""
        errors: Dict[str, Exception] = {}
        for config in configs:
            if not config.enabled:
                continue
            try:
                await self.connect(config)
            except Exception as e:
                errors[config.id] = e
        return errors

    def connection_state(self, provider_id: str) -> ConnectionState:
        connection = self._connections.get(provider_id)
        if connection is None:
            return ConnectionState.ABSENT
        if connection.connected:
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED

    def is_connected(self, provider_id: str) -> bool:
        return self.connection_state(provider_id) == ConnectionState.CONNECTED

    def get_connection(self, provider_id: str) -> Optional[RemoteConnection]:
        return self._connections.get(provider_id)

    def get_all_tools(self) -> List[ToolDescriptor]:
        """Tools of connected providers, in connection order."""
        tools: List[ToolDescriptor] = []
        for connection in self._connections.values():
            if connection.connected:
                tools.extend(connection.capabilities)
        return tools

    def get_provider_tools(self, provider_id: str) -> List[ToolDescriptor]:
        connection = self._connections.get(provider_id)
        return list(connection.capabilities) if connection else []

    def get_connected_providers(self) -> List[RemoteProviderConfig]:
        return [c.config for c in self._connections.values() if c.connected]

    async def invoke(
        self, provider_id: str, tool_name: str, arguments: Dict[str, Any]
    ) -> RemoteToolCallResult:
        """Call a tool on a connected provider. Never raises."""
        connection = self._connections.get(provider_id)
        if connection is None or not connection.connected:
            return RemoteToolCallResult(
                success=False,
                content=f'MCP Server "{provider_id}" not connected',
                is_error=True,
            )

        logger.info(f"Executing MCP tool: {tool_name} on {provider_id}")
        try:
            result = await connection.session.call_tool_mcp(tool_name, arguments)
        except (httpx.HTTPError, ConnectionError, OSError) as e:
            connection.connected = False
            logger.error(f"Connection to {provider_id} lost during {tool_name}: {e}")
            return RemoteToolCallResult(
                success=False, content=f"Tool call failed: {e}", is_error=True
            )
        except Exception as e:
            logger.error(f"Error executing tool {tool_name} on {provider_id}: {e}")
            return RemoteToolCallResult(
                success=False, content=f"Tool call failed: {e}", is_error=True
            )

        return format_call_result(result)

    async def refresh_capabilities(self, provider_id: str) -> List[ToolDescriptor]:
        """Re-list a provider's tools and replace the cached descriptors."""
        async with self._lock_for(provider_id):
            connection = self._connections.get(provider_id)
            if connection is None or not connection.connected:
                raise NotConnected(f'MCP Server "{provider_id}" not connected')

            tools = await connection.session.list_tools()
            connection.capabilities = [
                tool_to_descriptor(tool, connection.config) for tool in tools or []
            ]
            logger.info(
                f"Refreshed {len(connection.capabilities)} tools for {provider_id}"
            )
            return list(connection.capabilities)
