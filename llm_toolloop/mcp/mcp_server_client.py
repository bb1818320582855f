"""
MCP server client for llm_toolloop.
Owns the channel, RPC peer, heartbeat and reconnect timers for one tool server.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..constants import (
    CLIENT_CAPABILITIES,
    CLIENT_INFO,
    DEFAULT_TOOL_TIMEOUT,
    HEARTBEAT_INTERVAL,
    HEARTBEAT_TIMEOUT,
    INITIALIZE_TIMEOUT,
    LIST_TOOLS_TIMEOUT,
    MCP_PROTOCOL_VERSION,
    TOOLS_LIST_CHANGED,
)
from ..errors import RpcError, TransportError
from ..messages import ToolResult
from ..observability import EventLog
from ..utils import server_name_from_url
from .rpc_peer import RpcPeer
from .transport import AnyChannel, ReconnectBackoff, open_channel

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """MCP connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class MCPTool:
    """A tool advertised by a server."""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    server: Optional[str] = None
    server_name: Optional[str] = None

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        server: Optional[str] = None,
        server_name: Optional[str] = None,
    ) -> 'MCPTool':
        """
        Create from a ``tools/list`` entry.

        The schema may be under ``parameters``, ``input_schema`` or ``inputSchema``.
        """
        schema = data.get("parameters") or data.get("input_schema") or data.get("inputSchema") or {}
        return cls(
            name=str(data.get("name", "")),
            description=data.get("description") or "",
            parameters=schema if isinstance(schema, dict) else {},
            server=server,
            server_name=server_name,
        )

    def matches(self, tool_name: str) -> bool:
        """Exact name, or a namespaced name such as ``server.tool`` on either side."""
        return (
            self.name == tool_name
            or self.name.endswith("." + tool_name)
            or tool_name.endswith("." + self.name)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "server": self.server,
            "server_name": self.server_name,
        }

    def to_llm_function(self) -> Dict[str, Any]:
        """Tool entry in the OpenAI/Ollama function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class MCPConnection:
    """Connection record for one server."""
    server_url: str
    name: str
    auth_token: Optional[str] = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_error: Optional[str] = None
    tools: List[MCPTool] = field(default_factory=list)
    protocol_version: str = ""
    server_info: Dict[str, Any] = field(default_factory=dict)
    server_capabilities: Dict[str, Any] = field(default_factory=dict)


StateCallback = Callable[[str, ConnectionState], None]
ChannelFactory = Callable[..., AnyChannel]


def _content_text(result: Dict[str, Any]) -> str:
    content = result.get("content")
    if not isinstance(content, list):
        return ""
    parts = [
        str(item.get("text", ""))
        for item in content
        if isinstance(item, dict) and item.get("type", "text") == "text"
    ]
    return "\n".join(p for p in parts if p)


class MCPServerClient:
    """
    Client for one MCP tool server.

    Connection failures are recorded on the connection record instead of
    being raised. After an established connection drops, or a heartbeat
    fails, reconnects are retried with exponential backoff until
    ``disconnect`` is called.
    """

    def __init__(
        self,
        url: str,
        auth_token: Optional[str] = None,
        name: Optional[str] = None,
        event_log: Optional[EventLog] = None,
        channel_factory: Optional[ChannelFactory] = None,
        initialize_timeout: float = INITIALIZE_TIMEOUT,
        list_tools_timeout: float = LIST_TOOLS_TIMEOUT,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
        backoff: Optional[ReconnectBackoff] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        """
        Initialize the server client.

        Args:
            url: Server endpoint; the scheme selects the transport
            auth_token: Optional bearer token
            name: Display name, derived from the host if omitted
            event_log: Diagnostics sink
            channel_factory: Replacement for ``open_channel``
            initialize_timeout: Timeout for the initialize handshake
            list_tools_timeout: Timeout for tools/list
            heartbeat_interval: Seconds between pings on WebSocket channels
            heartbeat_timeout: Timeout for a single ping
            backoff: Reconnect delay policy
            sleep: Awaitable sleep used by timers
            on_state_change: Called with (url, state) on every transition
        """
        self._connection = MCPConnection(
            server_url=url,
            name=name or server_name_from_url(url),
            auth_token=auth_token,
        )
        self._event_log = event_log or EventLog()
        self._channel_factory = channel_factory or open_channel
        self._initialize_timeout = initialize_timeout
        self._list_tools_timeout = list_tools_timeout
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_timeout = heartbeat_timeout
        self._backoff = backoff or ReconnectBackoff()
        self._sleep = sleep or asyncio.sleep
        self._on_state_change = on_state_change

        self._channel: Optional[AnyChannel] = None
        self._peer: Optional[RpcPeer] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._manual_disconnect = False
        self._connecting = False

    @property
    def url(self) -> str:
        return self._connection.server_url

    @property
    def connection(self) -> MCPConnection:
        return self._connection

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.state == ConnectionState.CONNECTED

    @property
    def tools(self) -> List[MCPTool]:
        return list(self._connection.tools)

    def _set_state(self, state: ConnectionState) -> None:
        if self._connection.state == state:
            return
        self._connection.state = state
        self._event_log.info("connection", f"State -> {state.value}", server_url=self.url)
        if self._on_state_change is not None:
            try:
                self._on_state_change(self.url, state)
            except Exception:
                logger.exception("State listener failed")

    async def connect(self) -> bool:
        """
        Connect, perform the MCP handshake and cache the tool list.

        Returns:
            True if connected
        """
        if self.is_connected:
            return True
        self._manual_disconnect = False
        return await self._connect_once()

    async def _connect_once(self) -> bool:
        # A channel that ends mid-handshake fails the attempt; it must not also
        # start the reconnect loop.
        self._connecting = True
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open()
        except asyncio.CancelledError:
            await self._teardown()
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            self._connection.last_error = message
            self._event_log.error("connection", f"Connect failed: {message}", server_url=self.url)
            await self._teardown()
            self._set_state(ConnectionState.ERROR)
            return False
        finally:
            self._connecting = False
        return True

    async def _open(self) -> None:
        channel = self._channel_factory(
            self.url, self._connection.auth_token, event_log=self._event_log
        )
        self._channel = channel
        await channel.start()

        peer = RpcPeer(channel, event_log=self._event_log, server_url=self.url)
        self._peer = peer
        peer.on_notification(TOOLS_LIST_CHANGED, self._on_tools_list_changed)
        peer.on_close(self._on_peer_closed)
        peer.start()

        result = await peer.request("initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": CLIENT_CAPABILITIES,
            "clientInfo": CLIENT_INFO,
        }, timeout=self._initialize_timeout)
        if isinstance(result, dict):
            self._connection.protocol_version = result.get("protocolVersion", "")
            self._connection.server_info = result.get("serverInfo") or {}
            self._connection.server_capabilities = result.get("capabilities") or {}

        await peer.notify("notifications/initialized", {})

        self._connection.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        self._backoff.reset()

        if channel.needs_heartbeat and self._heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        await self._fetch_tools()

    async def _fetch_tools(self) -> None:
        if self._peer is None:
            return
        result = await self._peer.request("tools/list", {}, timeout=self._list_tools_timeout)
        raw_tools = result.get("tools", []) if isinstance(result, dict) else result
        if not isinstance(raw_tools, list):
            raw_tools = []
        self._connection.tools = [
            MCPTool.from_dict(t, server=self.url, server_name=self._connection.name)
            for t in raw_tools
            if isinstance(t, dict) and t.get("name")
        ]
        self._event_log.info(
            "connection", f"Cached {len(self._connection.tools)} tools", server_url=self.url
        )

    async def refresh_tools(self) -> bool:
        """
        Re-fetch the tool list.

        Returns:
            True if the cache was refreshed
        """
        if not self.is_connected:
            return False
        try:
            await self._fetch_tools()
        except (RpcError, TransportError) as e:
            self._event_log.warn("connection", f"Tool refresh failed: {e}", server_url=self.url)
            return False
        return True

    def _on_tools_list_changed(self, params: Dict[str, Any]) -> Awaitable[bool]:
        return self.refresh_tools()

    def find_tool(self, tool_name: str) -> Optional[MCPTool]:
        """Look up a cached tool by exact name, then by namespaced suffix."""
        for tool in self._connection.tools:
            if tool.name == tool_name:
                return tool
        for tool in self._connection.tools:
            if tool.matches(tool_name):
                return tool
        return None

    async def call_tool(
        self,
        name: str,
        arguments: Dict[str, Any],
        timeout: float = DEFAULT_TOOL_TIMEOUT,
    ) -> ToolResult:
        """
        Invoke ``tools/call``. Failures come back as an error result.

        Args:
            name: Tool name as advertised by the server
            arguments: Tool arguments
            timeout: Seconds to wait for the response

        Returns:
            ToolResult carrying either the result payload or an error string
        """
        if not self.is_connected or self._peer is None:
            return ToolResult.failure(f"Not connected to {self.url}")

        self._event_log.info("tool", f"Calling {name}", server_url=self.url)
        try:
            result = await self._peer.request(
                "tools/call", {"name": name, "arguments": arguments}, timeout=timeout
            )
        except (RpcError, TransportError) as e:
            self._event_log.warn("tool", f"{name} failed: {e}", server_url=self.url)
            return ToolResult.failure(str(e) or type(e).__name__)

        if isinstance(result, dict) and result.get("isError"):
            return ToolResult.failure(_content_text(result) or f"Tool {name} reported an error")
        return ToolResult(result=result)

    async def _heartbeat_loop(self) -> None:
        while True:
            await self._sleep(self._heartbeat_interval)
            peer = self._peer
            if peer is None or peer.closed:
                return
            if await peer.ping(self._heartbeat_timeout):
                self._event_log.debug("heartbeat", "Heartbeat ok", server_url=self.url)
                continue
            self._event_log.warn("heartbeat", "Heartbeat failed", server_url=self.url)
            self._connection.last_error = "Heartbeat failed"
            self._set_state(ConnectionState.ERROR)
            self._schedule_reconnect()
            return

    def _on_peer_closed(self) -> None:
        if self._manual_disconnect or self._connecting:
            return
        self._connection.last_error = "Connection lost"
        self._set_state(ConnectionState.ERROR)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._manual_disconnect:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        await self._teardown()
        while not self._manual_disconnect:
            delay = self._backoff.next_delay()
            self._event_log.info("connection", f"Reconnecting in {delay:g}s", server_url=self.url)
            await self._sleep(delay)
            if self._manual_disconnect:
                return
            if await self._connect_once():
                return

    async def _teardown(self) -> None:
        """Cancel the heartbeat and close peer and channel."""
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        if heartbeat is not None and heartbeat is not asyncio.current_task():
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        peer, self._peer = self._peer, None
        channel, self._channel = self._channel, None
        try:
            if peer is not None:
                await peer.close()
            elif channel is not None:
                await channel.close()
        except (TransportError, OSError) as e:
            logger.debug("Error while closing %s: %s", self.url, e)
        self._connection.tools = []

    async def disconnect(self) -> None:
        """Close the connection and stop all timers for this server."""
        self._manual_disconnect = True
        reconnect, self._reconnect_task = self._reconnect_task, None
        if reconnect is not None and reconnect is not asyncio.current_task():
            reconnect.cancel()
            try:
                await reconnect
            except asyncio.CancelledError:
                pass
        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)
