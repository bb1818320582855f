"""
Base classes for LLM providers in llm_toolloop.
Defines the streaming contract the turn controller drives.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from ..messages import Message, ToolCall


@dataclass
class StreamDelta:
    """One incremental piece of an assistant message.

    A delta may carry text, a full or partial structured tool call, or
    both. The final delta of a generation has ``done`` set.
    """
    content: str = ""
    tool_call: Optional[ToolCall] = None
    done: bool = False
    done_reason: Optional[str] = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class LLMProvider(ABC):
    """
    Abstract base class for streaming chat providers.

    Implementations turn a message list into a lazy, finite sequence of
    ``StreamDelta`` objects and report whether a model supports
    structured tool calls.
    """

    name: str = "base"

    @abstractmethod
    def chat_stream(
        self,
        messages: List[Message],
        model: str,
        supports_tools: bool = False,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[StreamDelta]:
        """
        Stream one assistant generation.

        Args:
            messages: Conversation including the synthesized tool manifest
            model: Model name
            supports_tools: Send the structured tool manifest and accept tool calls
            tools: Tool definitions in the function-calling format

        Returns:
            Async iterator of deltas
        """

    async def supports_tools(self, model: str) -> bool:
        """Whether ``model`` can emit structured tool calls."""
        return False
