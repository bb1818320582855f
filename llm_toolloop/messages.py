"""
Transcript data model for llm_toolloop.

A chat transcript is an ordered list of ``Message`` objects. Assistant
messages may carry a structured ``ToolCall``; tool messages answer one
and carry a ``ToolResult`` once the call settles.
"""
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .constants import CANCELLED
from .utils import new_id, summarize


class Role(str, Enum):
    """Message author roles."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


def _coerce_args(raw: Any) -> Optional[Dict[str, Any]]:
    """Accept arguments as a mapping or as a JSON-encoded object string."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


@dataclass
class ToolCall:
    """
    A structured tool invocation requested by the model.

    Fields are optional because a call may arrive in fragments across
    several stream deltas; see ``merge``.
    """
    id: Optional[str] = None
    server: Optional[str] = None
    name: Optional[str] = None
    args: Optional[Dict[str, Any]] = None

    @property
    def is_complete(self) -> bool:
        """A call is complete once it has a name and an argument mapping."""
        return bool(self.name) and self.args is not None

    def merge(self, fragment: "ToolCall") -> "ToolCall":
        """Combine with a later fragment; the last non-null value wins per field."""
        return ToolCall(
            id=fragment.id if fragment.id is not None else self.id,
            server=fragment.server if fragment.server is not None else self.server,
            name=fragment.name if fragment.name is not None else self.name,
            args=fragment.args if fragment.args is not None else self.args,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "server": self.server,
            "name": self.name,
            "args": self.args,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ToolCall"]:
        """
        Build from a mapping, tolerating the common provider shapes.

        Accepts ``args`` or ``arguments`` (object or JSON string), and the
        OpenAI-style ``{"function": {"name", "arguments"}}`` nesting.
        """
        if not isinstance(data, dict):
            return None
        function = data.get("function")
        if isinstance(function, dict):
            name = function.get("name")
            raw_args = function.get("arguments", function.get("args"))
        else:
            name = data.get("name")
            raw_args = data.get("args", data.get("arguments"))
        return cls(
            id=data.get("id"),
            server=data.get("server"),
            name=name,
            args=_coerce_args(raw_args),
        )


@dataclass
class ToolResult:
    """Outcome of a tool call: exactly one of result or error is meaningful."""
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_cancelled(self) -> bool:
        return self.error == CANCELLED

    @classmethod
    def cancelled(cls) -> "ToolResult":
        return cls(error=CANCELLED)

    @classmethod
    def failure(cls, error: str) -> "ToolResult":
        return cls(error=error)

    def summary(self) -> str:
        """Short text form used as the tool message's persisted content."""
        if self.error is not None:
            return f"Error: {self.error}"
        return summarize(self.result, max_length=500)

    def to_dict(self) -> dict:
        return {"result": self.result, "error": self.error}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ToolResult"]:
        if not isinstance(data, dict):
            return None
        error = data.get("error")
        return cls(result=data.get("result"), error=str(error) if error is not None else None)


@dataclass
class Message:
    """
    One transcript entry.

    Attributes:
        content: Text payload, possibly empty while a tool call is pending
        role: Author role
        id: Unique identifier generated at creation
        created_at: Creation time, refreshed by ``finalize``
        model: Model that produced an assistant message
        tool_call: Structured tool request (assistant) or the call answered (tool)
        tool_result: Outcome on tool messages, None while in flight
        metadata: Provider-specific extras such as ``done_reason``
    """
    content: str
    role: Role
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    model: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.role = Role(self.role)
        if self.role == Role.TOOL and self.tool_call is None:
            raise ValueError("tool messages must reference the tool call they answer")

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(content=content, role=Role.USER)

    @classmethod
    def assistant(cls, content: str = "", model: Optional[str] = None) -> "Message":
        return cls(content=content, role=Role.ASSISTANT, model=model)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(content=content, role=Role.SYSTEM)

    @classmethod
    def tool_scaffold(cls, call: ToolCall) -> "Message":
        """Create the in-flight tool message answering ``call``."""
        return cls(content="", role=Role.TOOL, tool_call=call)

    @property
    def is_settled(self) -> bool:
        return self.role != Role.TOOL or self.tool_result is not None

    def finalize(self) -> None:
        """Refresh the timestamp when streaming or execution completes."""
        self.created_at = time.time()

    def settle(self, outcome: ToolResult) -> None:
        """Record the outcome of a tool message and its content summary."""
        self.tool_result = outcome
        self.content = outcome.summary()
        self.finalize()

    def apply_delta_metadata(self, metadata: Optional[Dict[str, Any]]) -> None:
        if metadata:
            self.metadata.update(metadata)

    def to_chat_dict(self, structured: bool = True) -> dict:
        """
        Convert to the LLM request shape.

        With ``structured`` the tool call travels as ``tool_calls`` and tool
        results as ``tool`` messages; otherwise both are rendered as
        sentinel text so that models without tool support can follow along.
        """
        if self.role == Role.TOOL:
            payload = self.tool_result.to_dict() if self.tool_result else {"result": None, "error": None}
            if structured:
                out = {
                    "role": "tool",
                    "content": json.dumps(payload, ensure_ascii=False, default=str),
                }
                if self.tool_call and self.tool_call.name:
                    out["tool_name"] = self.tool_call.name
                if self.tool_call and self.tool_call.id:
                    out["tool_call_id"] = self.tool_call.id
                return out
            from .prompts.tools.parser import format_tool_result
            name = self.tool_call.name if self.tool_call else None
            return {"role": "user", "content": format_tool_result(name, payload["result"], payload["error"])}

        out = {"role": self.role.value, "content": self.content}
        if self.role == Role.ASSISTANT and self.tool_call is not None:
            if structured:
                out["tool_calls"] = [{
                    "id": self.tool_call.id,
                    "type": "function",
                    "function": {
                        "name": self.tool_call.name,
                        "arguments": self.tool_call.args or {},
                    },
                }]
            elif not self.content:
                from .prompts.tools.parser import format_tool_call
                out["content"] = format_tool_call(self.tool_call)
        return out

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at,
            "model": self.model,
            "tool_call": self.tool_call.to_dict() if self.tool_call else None,
            "tool_result": self.tool_result.to_dict() if self.tool_result else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data.get("id") or new_id(),
            role=Role(data.get("role", Role.USER.value)),
            content=data.get("content") or "",
            created_at=data.get("created_at") or time.time(),
            model=data.get("model"),
            tool_call=ToolCall.from_dict(data.get("tool_call")),
            tool_result=ToolResult.from_dict(data.get("tool_result")),
            metadata=data.get("metadata") or {},
        )
