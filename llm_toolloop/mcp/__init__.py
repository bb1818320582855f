"""MCP (Model Context Protocol) tool-server client modules for llm_toolloop."""
from .mcp_manager import MCPManager, ToolClient
from .mcp_registry import MCPRegistry, MCPServerConfig
from .mcp_server_client import ConnectionState, MCPConnection, MCPServerClient, MCPTool
from .rpc_peer import RpcPeer
from .schema_validator import SchemaValidator, normalize_schema
from .transport import HttpSseChannel, WebSocketChannel, open_channel

__all__ = [
    'MCPManager', 'ToolClient',
    'MCPRegistry', 'MCPServerConfig',
    'ConnectionState', 'MCPConnection', 'MCPServerClient', 'MCPTool',
    'RpcPeer',
    'SchemaValidator', 'normalize_schema',
    'HttpSseChannel', 'WebSocketChannel', 'open_channel',
]
