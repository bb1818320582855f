"""
MCP manager for llm_toolloop.
The tool client used by the turn controller: one server client per URL,
tool lookup, argument validation and failure-free tool calls.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from ..constants import DEFAULT_TOOL_TIMEOUT
from ..messages import ToolResult
from ..observability import EventLog
from .mcp_registry import MCPServerConfig
from .mcp_server_client import ConnectionState, MCPConnection, MCPServerClient, MCPTool
from .schema_validator import ROOT_PATH, SchemaValidator, normalize_schema

logger = logging.getLogger(__name__)

StateListener = Callable[[Dict[str, ConnectionState]], None]


class ToolClient(Protocol):
    """What the turn controller needs from a tool client."""

    def list_tools(self, server: Optional[str] = None) -> List[MCPTool]:
        ...

    def validate_tool_arguments(
        self, server: Optional[str], tool_name: str, arguments: Dict[str, Any]
    ) -> List[str]:
        ...

    async def call(
        self,
        server: Optional[str],
        tool_name: str,
        arguments: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> ToolResult:
        ...


class MCPManager:
    """
    High-level manager for tool server connections.

    Servers are keyed by URL. A configured display name can be used
    wherever a URL is expected, and a call that names no known server is
    routed to the connected server that owns the tool.
    """

    def __init__(
        self,
        event_log: Optional[EventLog] = None,
        client_factory: Optional[Callable[..., MCPServerClient]] = None,
        default_timeout: float = DEFAULT_TOOL_TIMEOUT,
        validator: Optional[SchemaValidator] = None,
        **client_options: Any,
    ) -> None:
        """
        Initialize the manager.

        Args:
            event_log: Diagnostics sink shared with every server client
            client_factory: Replacement for ``MCPServerClient``
            default_timeout: Timeout for tool calls without an explicit one
            validator: Schema validator for tool arguments
            **client_options: Extra keyword arguments for each server client
        """
        self._event_log = event_log or EventLog()
        self._client_factory = client_factory or MCPServerClient
        self._default_timeout = default_timeout
        self._validator = validator or SchemaValidator()
        self._client_options = client_options
        self._clients: Dict[str, MCPServerClient] = {}
        self._aliases: Dict[str, str] = {}
        self._state_listeners: List[StateListener] = []

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    # Connections

    async def connect(
        self,
        server_url: str,
        auth_token: Optional[str] = None,
        name: Optional[str] = None,
    ) -> bool:
        """
        Connect to a server. A no-op if it is already connected.

        Returns:
            True if the server is connected afterwards
        """
        client = self._clients.get(server_url)
        if client is not None and client.is_connected:
            return True
        if client is None:
            client = self._client_factory(
                server_url,
                auth_token=auth_token,
                name=name,
                event_log=self._event_log,
                on_state_change=self._on_state_change,
                **self._client_options,
            )
            self._clients[server_url] = client
            # Display names double as aliases, so they must stay unique
            owner = self._aliases.get(client.connection.name)
            if owner is not None and owner != server_url:
                client.connection.name = server_url
        self._aliases[client.connection.name] = server_url
        return await client.connect()

    async def connect_all(self, servers: Iterable[MCPServerConfig]) -> Dict[str, bool]:
        """
        Connect to every enabled server concurrently.

        Returns:
            Mapping of server name to connection success
        """
        configs = [s for s in servers if s.enabled and s.endpoint]
        results = await asyncio.gather(*(
            self.connect(s.endpoint, s.auth_token, name=s.name) for s in configs
        ))
        return {config.name: ok for config, ok in zip(configs, results)}

    async def disconnect(self, server_url: str) -> bool:
        """
        Disconnect a server and drop its record.

        Returns:
            True if the server was known
        """
        url = self._aliases.get(server_url, server_url)
        client = self._clients.pop(url, None)
        if client is None:
            return False
        self._aliases = {name: u for name, u in self._aliases.items() if u != url}
        await client.disconnect()
        return True

    async def disconnect_all(self) -> None:
        for url in list(self._clients.keys()):
            await self.disconnect(url)

    def get_state(self, server: str) -> ConnectionState:
        client = self._resolve_client(server)
        return client.state if client else ConnectionState.DISCONNECTED

    def is_connected(self, server: str) -> bool:
        return self.get_state(server) == ConnectionState.CONNECTED

    def get_last_error(self, server: str) -> Optional[str]:
        client = self._resolve_client(server)
        return client.connection.last_error if client else None

    def get_connection(self, server: str) -> Optional[MCPConnection]:
        client = self._resolve_client(server)
        return client.connection if client else None

    def list_connections(self) -> List[MCPConnection]:
        return [client.connection for client in self._clients.values()]

    def states(self) -> Dict[str, ConnectionState]:
        return {url: client.state for url, client in self._clients.items()}

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a listener receiving a ``{url: state}`` snapshot on every transition.

        Returns:
            A function that removes the listener
        """
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    def _on_state_change(self, server_url: str, state: ConnectionState) -> None:
        snapshot = self.states()
        snapshot[server_url] = state
        for listener in list(self._state_listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Connection state listener failed")

    # Tools

    def _resolve_client(
        self, server: Optional[str], tool_name: Optional[str] = None
    ) -> Optional[MCPServerClient]:
        named = None
        if server:
            named = self._clients.get(server) or self._clients.get(self._aliases.get(server, ""))
            if named is not None and (not tool_name or named.find_tool(tool_name) is not None):
                return named
        if tool_name:
            for client in self._clients.values():
                if client.is_connected and client.find_tool(tool_name) is not None:
                    return client
        return named

    def list_tools(self, server: Optional[str] = None) -> List[MCPTool]:
        """
        Cached tools for one server, or the union across connected servers.
        """
        if server is not None:
            client = self._resolve_client(server)
            return client.tools if client and client.is_connected else []
        tools: List[MCPTool] = []
        for client in self._clients.values():
            if client.is_connected:
                tools.extend(client.tools)
        return tools

    def find_tool(self, tool_name: str, server: Optional[str] = None) -> Optional[MCPTool]:
        """
        Find a tool by exact name, falling back to a namespaced suffix match.

        Args:
            tool_name: Tool name, possibly namespaced like ``server.tool``
            server: URL or name of the server to search; all connected servers if omitted
        """
        client = self._resolve_client(server, tool_name)
        if client is not None:
            return client.find_tool(tool_name)
        return None

    def validate_tool_arguments(
        self, server: Optional[str], tool_name: str, arguments: Dict[str, Any]
    ) -> List[str]:
        """
        Validate arguments against the tool's parameter schema.

        Returns:
            Validation errors; ``["Unknown tool: X"]`` if the tool is not cached
        """
        tool = self.find_tool(tool_name, server)
        if tool is None:
            return [f"Unknown tool: {tool_name}"]
        schema = normalize_schema(tool.parameters)
        if schema is None:
            return []
        return self._validator.validate(schema, arguments, ROOT_PATH)

    async def call(
        self,
        server: Optional[str],
        tool_name: str,
        arguments: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """
        Call a tool. Never raises; failures come back in ``ToolResult.error``.

        Args:
            server: URL or name of the server, or None to route by tool name
            tool_name: Tool to invoke
            arguments: Tool arguments
            timeout: Seconds to wait, defaulting to the manager's tool timeout
        """
        client = self._resolve_client(server, tool_name)
        if client is None:
            return ToolResult.failure(f"Unknown tool: {tool_name}")

        tool = client.find_tool(tool_name)
        remote_name = tool.name if tool is not None else tool_name
        try:
            return await client.call_tool(
                remote_name, arguments, timeout=timeout or self._default_timeout
            )
        except Exception as e:
            logger.exception("Unexpected failure calling %s on %s", remote_name, client.url)
            return ToolResult.failure(str(e) or type(e).__name__)

    def get_tools_for_llm(self) -> List[Dict[str, Any]]:
        """All connected tools in the function-calling format."""
        return [tool.to_llm_function() for tool in self.list_tools()]

    def get_status(self) -> Dict[str, Any]:
        """Summary of every known server for status displays."""
        return {
            url: {
                "name": client.connection.name,
                "state": client.state.value,
                "tools": len(client.connection.tools),
                "last_error": client.connection.last_error,
            }
            for url, client in self._clients.items()
        }
