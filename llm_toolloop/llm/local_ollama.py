"""
Ollama provider for llm_toolloop.
Streams chat completions from a local or remote Ollama server.
"""
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..constants import DEFAULT_OLLAMA_HOST, DEFAULT_REQUEST_TIMEOUT, DEFAULT_TEMPERATURE
from ..errors import LLMError
from ..messages import Message, ToolCall
from ..utils import new_id, truncate_string
from .base import LLMProvider, StreamDelta

logger = logging.getLogger(__name__)


class OllamaProvider(LLMProvider):
    """Streaming client for Ollama's ``/api/chat`` endpoint."""

    name = "ollama"

    def __init__(
        self,
        host: str = DEFAULT_OLLAMA_HOST,
        temperature: float = DEFAULT_TEMPERATURE,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the provider.

        Args:
            host: Ollama base URL
            temperature: Sampling temperature
            request_timeout: Timeout for a whole streamed request
            transport: Optional httpx transport, used by tests
        """
        self._host = host.rstrip("/")
        self._temperature = temperature
        self._timeout = request_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def chat_stream(
        self,
        messages: List[Message],
        model: str,
        supports_tools: bool = False,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[StreamDelta]:
        """Send a streaming chat request to Ollama."""
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [m.to_chat_dict(structured=supports_tools) for m in messages],
            "stream": True,
            "options": {"temperature": self._temperature},
        }
        if supports_tools and tools:
            payload["tools"] = tools

        async with self._client() as client:
            async with client.stream("POST", f"{self._host}/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMError(
                        f"Ollama returned HTTP {response.status_code}: {truncate_string(body, 200)}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream line: %s", truncate_string(line, 200))
                        continue

                    if data.get("error"):
                        raise LLMError(str(data["error"]))

                    delta = self._parse_chunk(data, model)
                    if delta is not None:
                        yield delta

    def _parse_chunk(self, data: Dict[str, Any], model: str) -> Optional[StreamDelta]:
        message = data.get("message") or {}
        content = message.get("content") or ""
        tool_call = None

        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            if len(tool_calls) > 1:
                logger.debug("Model requested %d tool calls; handling the first", len(tool_calls))
            tool_call = ToolCall.from_dict(tool_calls[0])
            if tool_call is not None and tool_call.id is None:
                tool_call.id = new_id()

        done = bool(data.get("done"))
        if not content and tool_call is None and not done:
            return None

        metadata = {}
        if done:
            for key in ("total_duration", "eval_count", "prompt_eval_count", "eval_duration"):
                if key in data:
                    metadata[key] = data[key]

        return StreamDelta(
            content=content,
            tool_call=tool_call,
            done=done,
            done_reason=data.get("done_reason") if done else None,
            model=data.get("model", model),
            metadata=metadata,
        )

    async def supports_tools(self, model: str) -> bool:
        """Check the model's advertised capabilities via ``/api/show``."""
        try:
            async with self._client() as client:
                response = await client.post(f"{self._host}/api/show", json={"model": model})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not read capabilities for %s: %s", model, e)
            return False
        capabilities = data.get("capabilities") or []
        return "tools" in capabilities

    async def list_models(self) -> List[str]:
        """List locally available models."""
        async with self._client() as client:
            response = await client.get(f"{self._host}/api/tags")
            response.raise_for_status()
            return [m.get("name", "") for m in response.json().get("models", [])]
