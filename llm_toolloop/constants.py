"""
Constants and policy defaults for llm_toolloop.
"""
from pathlib import Path
from typing import Final

APP_NAME: Final[str] = "llm_toolloop"
APP_VERSION: Final[str] = "1.0.0"
APP_DESCRIPTION: Final[str] = "Streaming tool-calling orchestration for LLM chat clients"

CONFIG_DIR: Final[Path] = Path.home() / ".llm_toolloop"
CONFIG_FILE: Final[Path] = CONFIG_DIR / "config.json"
HISTORY_DB: Final[Path] = CONFIG_DIR / "history.db"
MCP_CONFIG_FILE: Final[Path] = CONFIG_DIR / "mcp_servers.json"

DEFAULT_OLLAMA_HOST: Final[str] = "http://localhost:11434"
DEFAULT_MODEL: Final[str] = "llama3.1"
DEFAULT_TEMPERATURE: Final[float] = 0.7
DEFAULT_REQUEST_TIMEOUT: Final[float] = 300.0

# MCP handshake
MCP_PROTOCOL_VERSION: Final[str] = "2024-11-05"
CLIENT_INFO: Final[dict] = {"name": APP_NAME, "version": APP_VERSION}
CLIENT_CAPABILITIES: Final[dict] = {
    "roots": {"listChanged": True},
    "sampling": {},
}

# Turn policy
DEFAULT_MAX_TOOL_CALLS_PER_TURN: Final[int] = 5
BOUND_EXCEEDED_MESSAGE: Final[str] = (
    "Stopped: the maximum number of tool calls per turn ({limit}) was reached "
    "before the model produced a final answer."
)

# Timeouts (seconds)
DEFAULT_TOOL_TIMEOUT: Final[float] = 30.0
INITIALIZE_TIMEOUT: Final[float] = 20.0
LIST_TOOLS_TIMEOUT: Final[float] = 15.0
HEARTBEAT_INTERVAL: Final[float] = 30.0
HEARTBEAT_TIMEOUT: Final[float] = 10.0
SESSION_WAIT_TIMEOUT: Final[float] = 10.0
HTTP_CONNECT_TIMEOUT: Final[float] = 10.0

# Reconnect backoff: 1s, 2s, 4s ... capped
BACKOFF_BASE: Final[float] = 1.0
BACKOFF_MAX: Final[float] = 30.0

# HTTP+SSE transport
SSE_CANDIDATE_PATHS: Final[tuple] = ("/sse", "/events", "/stream", "")
POST_FALLBACK_PATHS: Final[tuple] = ("/message", "/rpc", "")
MAX_REDIRECTS: Final[int] = 5
REDIRECT_STATUSES: Final[frozenset] = frozenset({301, 302, 307})
ENVELOPE_KEYS: Final[tuple] = ("data", "message", "payload")
MAX_ENVELOPE_DEPTH: Final[int] = 8
SSE_DONE_MARKER: Final[str] = "[DONE]"

# JSON-RPC
JSONRPC_VERSION: Final[str] = "2.0"
PING_METHOD: Final[str] = "$/ping"
TOOLS_LIST_CHANGED: Final[str] = "notifications/tools/list_changed"

# Tool results
CANCELLED: Final[str] = "Cancelled"
INVALID_ARGUMENTS_PREFIX: Final[str] = "Invalid arguments"

# Text-sentinel fallback for models without structured tool calls
TOOL_CALL_SENTINEL: Final[str] = "TOOL_CALL:"
TOOL_RESULT_SENTINEL: Final[str] = "TOOL_RESULT:"

EVENT_LOG_CAPACITY: Final[int] = 500
