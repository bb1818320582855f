"""
Error types for llm_toolloop.

Transport and RPC failures are recovered at the tool-client boundary and
turned into ordinary result values; these classes exist so that the layers
below that boundary can raise something specific.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx


METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000
REQUEST_TIMEOUT = -32001

DISCONNECTED_MESSAGE = "Disconnected from server"
NETWORK_LOST_MESSAGE = (
    "Network connection lost. Check your server address or internet connection."
)
GENERIC_ERROR_MESSAGE = "Something went wrong."


class ToolLoopError(Exception):
    """Base class for all llm_toolloop errors."""


class TransportError(ToolLoopError):
    """Raised when a channel cannot be opened or a message cannot be delivered."""


class LLMError(ToolLoopError):
    """Raised by LLM providers for HTTP or protocol failures."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RpcError(ToolLoopError):
    """A JSON-RPC error object: {code, message, data}."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @property
    def is_method_not_found(self) -> bool:
        return self.code == METHOD_NOT_FOUND

    @classmethod
    def from_dict(cls, error: Any) -> "RpcError":
        """
        Build from the ``error`` member of a JSON-RPC response.

        Tolerates servers that send a bare string instead of an object.
        """
        if not isinstance(error, dict):
            return cls(SERVER_ERROR, str(error))
        code = error.get("code", SERVER_ERROR)
        if not isinstance(code, int) or isinstance(code, bool):
            code = SERVER_ERROR
        return cls(code, str(error.get("message", "Unknown error")), error.get("data"))

    def to_dict(self) -> dict:
        result = {"code": self.code, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"RpcError(code={self.code}, message={self.message!r})"


class RequestTimeoutError(RpcError):
    """No response arrived within the request timeout."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(REQUEST_TIMEOUT, f"Request '{method}' timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class DisconnectedError(RpcError):
    """A pending request failed because its connection was torn down."""

    def __init__(self, message: str = DISCONNECTED_MESSAGE) -> None:
        super().__init__(SERVER_ERROR, message)


@dataclass
class ChatError:
    """
    Chat-level error record kept apart from the transcript.

    Attributes:
        message: User-facing text
        kind: One of "network", "llm" or "unexpected"
        timestamp: When the error was recorded
    """
    message: str
    kind: str = "unexpected"
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ChatError":
        """Classify an exception that escaped a turn."""
        if is_network_error(exc):
            return cls(NETWORK_LOST_MESSAGE, kind="network")
        if isinstance(exc, LLMError):
            return cls(str(exc) or GENERIC_ERROR_MESSAGE, kind="llm")
        return cls(GENERIC_ERROR_MESSAGE, kind="unexpected")


def is_network_error(exc: BaseException) -> bool:
    """Check whether an exception means the network went away."""
    return isinstance(exc, (httpx.TransportError, ConnectionError, OSError, TransportError))
