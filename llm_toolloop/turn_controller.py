"""
Turn controller for llm_toolloop.

Drives one user turn per chat: stream a generation, detect a tool call,
suspend the stream, run the tool through the tool client, inject the
result and resume, bounded by an ``IterationController``.

State per chat: Idle -> Streaming -> (ToolPending -> Executing -> Streaming)* -> Idle,
with Cancelled reachable from Streaming or Executing.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .constants import (
    DEFAULT_MAX_TOOL_CALLS_PER_TURN,
    DEFAULT_MODEL,
    DEFAULT_TOOL_TIMEOUT,
    INVALID_ARGUMENTS_PREFIX,
)
from .errors import ChatError, ToolLoopError, is_network_error
from .iteration_controller import IterationController
from .llm.base import LLMProvider
from .mcp.mcp_manager import ToolClient
from .messages import Message, Role, ToolCall, ToolResult
from .observability import EventLog
from .prompts.tools import generate_tool_system_prompt, parse_tool_call, tools_for_llm
from .utils import new_id

logger = logging.getLogger(__name__)


class TurnOutcome(str, Enum):
    """How a turn ended."""
    FINAL = "final"
    CANCELLED = "cancelled"
    BOUND_EXCEEDED = "bound_exceeded"
    ERROR = "error"


@dataclass
class TurnState:
    """Live state of one chat's turn; dropped when the turn ends."""
    iterations: IterationController
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    active_stream: Optional[Message] = None
    thinking: bool = False
    pending_tool_message: Optional[Message] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class TurnController:
    """
    Orchestrates streaming generations and tool round trips per chat.

    Every table here is owned by the instance, so independent controllers
    never share transcripts, cancellation flags or capability caches.
    """

    def __init__(
        self,
        llm: LLMProvider,
        tools: ToolClient,
        store: Optional[Any] = None,
        model: str = DEFAULT_MODEL,
        max_tool_calls_per_turn: int = DEFAULT_MAX_TOOL_CALLS_PER_TURN,
        tool_timeout: float = DEFAULT_TOOL_TIMEOUT,
        event_log: Optional[EventLog] = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            llm: Streaming chat provider
            tools: Tool client used for validation and calls
            store: Optional message store; plain or coroutine methods
            model: Model used for generations
            max_tool_calls_per_turn: Tool round trips allowed per turn
            tool_timeout: Seconds to wait for each tool call
            event_log: Diagnostics sink
        """
        self._llm = llm
        self._tools = tools
        self._store = store
        self.model = model
        self.max_tool_calls_per_turn = max_tool_calls_per_turn
        self.tool_timeout = tool_timeout
        self._event_log = event_log or EventLog()

        self._transcripts: Dict[str, List[Message]] = {}
        self._turns: Dict[str, TurnState] = {}
        self._chat_errors: Dict[str, ChatError] = {}
        self._model_caps: Dict[str, bool] = {}
        self._orphaned_calls: Set[asyncio.Task] = set()

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    # Transcript access

    def messages(self, chat_id: str) -> List[Message]:
        """A copy of the chat's transcript."""
        return list(self._transcripts.get(chat_id, []))

    def _transcript(self, chat_id: str) -> List[Message]:
        return self._transcripts.setdefault(chat_id, [])

    async def load_chat(self, chat_id: str) -> List[Message]:
        """
        Hydrate a chat's transcript from the store.

        Without a store (or if loading fails) the in-memory transcript is kept.
        """
        if chat_id in self._turns:
            raise ToolLoopError(f"Chat {chat_id} has a turn in progress")
        stored = await self._persist("get_messages", chat_id)
        if stored is not None:
            self._transcripts[chat_id] = list(stored)
        return self.messages(chat_id)

    async def delete_message(self, chat_id: str, message_id: str) -> bool:
        """Remove a message from the transcript and the store."""
        transcript = self._transcript(chat_id)
        for index, message in enumerate(transcript):
            if message.id == message_id:
                del transcript[index]
                await self._persist("delete_message", message_id)
                return True
        return False

    # Status

    def is_streaming(self, chat_id: str) -> bool:
        """Whether a turn is in flight for the chat."""
        return chat_id in self._turns

    def is_thinking(self, chat_id: str) -> bool:
        """Whether a generation has started but produced no delta yet."""
        state = self._turns.get(chat_id)
        return bool(state and state.thinking)

    def get_chat_error(self, chat_id: str) -> Optional[ChatError]:
        return self._chat_errors.get(chat_id)

    def clear_chat_error(self, chat_id: str) -> None:
        self._chat_errors.pop(chat_id, None)

    # Model capabilities

    def set_supports_tools_for_model(self, model: str, supported: bool) -> None:
        self._model_caps[model] = supported

    def invalidate_capabilities(self, model: Optional[str] = None) -> None:
        """Forget cached capabilities for one model, or for all of them."""
        if model is None:
            self._model_caps.clear()
        else:
            self._model_caps.pop(model, None)

    async def _supports_tools(self, model: str) -> bool:
        if model not in self._model_caps:
            self._model_caps[model] = bool(await self._llm.supports_tools(model))
        return self._model_caps[model]

    # Turn entry points

    async def send_prompt(self, chat_id: str, text: str) -> TurnOutcome:
        """
        Append a user message and run a turn to completion.

        Args:
            chat_id: Chat to extend
            text: User prompt

        Returns:
            How the turn ended

        Raises:
            ToolLoopError: If the chat already has a turn in progress
        """
        self._ensure_idle(chat_id)
        prompt = Message.user(text)
        self._transcript(chat_id).append(prompt)
        await self._persist("add_message", prompt, chat_id)
        return await self._run(chat_id)

    async def retry_last_prompt(self, chat_id: str) -> Optional[TurnOutcome]:
        """
        Drop a trailing assistant message and rerun the turn.

        Returns:
            The outcome, or None if the chat has no user prompt to retry
        """
        self._ensure_idle(chat_id)
        transcript = self._transcript(chat_id)
        if transcript and transcript[-1].role == Role.ASSISTANT:
            dropped = transcript.pop()
            await self._persist("delete_message", dropped.id)
        if not any(m.role == Role.USER for m in transcript):
            return None
        return await self._run(chat_id)

    async def regenerate_message(self, chat_id: str, message_id: str) -> Optional[TurnOutcome]:
        """
        Truncate the transcript at a message and rerun the turn.

        A user message is kept and everything after it is discarded; any
        other message is discarded together with everything after it.

        Returns:
            The outcome, or None if the message is unknown or nothing is left to answer
        """
        self._ensure_idle(chat_id)
        transcript = self._transcript(chat_id)
        index = next((i for i, m in enumerate(transcript) if m.id == message_id), None)
        if index is None:
            return None
        cut = index + 1 if transcript[index].role == Role.USER else index
        removed = transcript[cut:]
        del transcript[cut:]
        if removed:
            await self._delete_stored([m.id for m in removed])
        if not any(m.role == Role.USER for m in transcript):
            return None
        return await self._run(chat_id)

    def cancel(self, chat_id: str) -> bool:
        """
        Cancel the chat's turn at its next checkpoint.

        Returns:
            True if a turn was in flight
        """
        state = self._turns.get(chat_id)
        if state is None:
            return False
        state.cancel_event.set()
        self._event_log.info("turn", "Turn cancelled", chat_id=chat_id)
        return True

    def cancel_tool_call(self, message_id: str) -> bool:
        """
        Cancel an in-flight tool call by its tool message id.

        The message settles as "Cancelled" and the turn ends. A settled or
        unknown message is left untouched.

        Returns:
            True if a pending call was cancelled
        """
        for chat_id, state in self._turns.items():
            pending = state.pending_tool_message
            if pending is None or pending.id != message_id:
                continue
            if pending.is_settled:
                return False
            pending.settle(ToolResult.cancelled())
            state.cancel_event.set()
            self._event_log.info(
                "tool", "Tool call cancelled", chat_id=chat_id,
                tool=pending.tool_call.name if pending.tool_call else None,
            )
            return True
        return False

    def _ensure_idle(self, chat_id: str) -> None:
        if chat_id in self._turns:
            raise ToolLoopError(f"Chat {chat_id} already has a turn in progress")

    # The loop

    async def _run(self, chat_id: str) -> TurnOutcome:
        state = TurnState(iterations=IterationController(self.max_tool_calls_per_turn))
        self._turns[chat_id] = state
        self.clear_chat_error(chat_id)
        self._event_log.info("turn", "Turn started", chat_id=chat_id, model=self.model)
        try:
            outcome = await self._loop(chat_id, state)
        except Exception as e:
            outcome = TurnOutcome.ERROR
            error = ChatError.from_exception(e)
            self._chat_errors[chat_id] = error
            if is_network_error(e):
                logger.warning("Turn for chat %s lost the network: %s", chat_id, e)
            else:
                logger.exception("Turn for chat %s failed", chat_id)
            self._event_log.error("turn", error.message, chat_id=chat_id, error=str(e))
            partial = state.active_stream
            if partial is not None:
                partial.finalize()
                await self._persist("add_message", partial, chat_id)
            stranded = state.pending_tool_message
            if stranded is not None and not stranded.is_settled:
                stranded.settle(ToolResult.failure(error.message))
                await self._persist(
                    "update_message", stranded,
                    new_content=stranded.content, new_tool_result=stranded.tool_result,
                )
        finally:
            self._turns.pop(chat_id, None)
        self._event_log.info(
            "turn", f"Turn ended: {outcome.value}", chat_id=chat_id,
            tool_calls=state.iterations.tool_calls,
        )
        return outcome

    async def _loop(self, chat_id: str, state: TurnState) -> TurnOutcome:
        transcript = self._transcript(chat_id)

        while state.iterations.should_continue():
            # Re-armed every iteration so the next generation is not read as cancelled
            state.thinking = True
            state.active_stream = None

            structured = await self._supports_tools(self.model)
            tools = self._tools.list_tools()
            manifest = Message.system(generate_tool_system_prompt(tools, structured=structured))
            outgoing = [manifest] + list(transcript)

            reply = await self._stream(chat_id, state, outgoing, structured, tools)
            state.thinking = False

            if state.cancelled:
                if reply is not None:
                    reply.finalize()
                    await self._persist("add_message", reply, chat_id)
                return TurnOutcome.CANCELLED

            if reply is None:
                reply = Message.assistant("", model=self.model)
                transcript.append(reply)

            if reply.tool_call is None:
                reply.finalize()
                await self._persist("add_message", reply, chat_id)
                return TurnOutcome.FINAL

            outcome = await self._execute(chat_id, state, reply)
            if outcome.is_cancelled:
                return TurnOutcome.CANCELLED
            state.iterations.on_tool_call()

        warning = Message.assistant(state.iterations.on_max_iterations_reached(), model=self.model)
        warning.metadata["error"] = "max_tool_calls"
        transcript.append(warning)
        await self._persist("add_message", warning, chat_id)
        self._event_log.warn(
            "turn", "Tool call limit reached", chat_id=chat_id,
            limit=state.iterations.max_tool_calls,
        )
        return TurnOutcome.BOUND_EXCEEDED

    async def _stream(
        self,
        chat_id: str,
        state: TurnState,
        outgoing: List[Message],
        structured: bool,
        tools: list,
    ) -> Optional[Message]:
        """
        Consume one generation into a pending assistant message.

        Stops early on cancellation or as soon as a complete tool call is
        present. Returns None if the stream produced no delta at all.
        """
        transcript = self._transcript(chat_id)
        pending: Optional[Message] = None
        fragments: Optional[ToolCall] = None

        stream = self._llm.chat_stream(
            outgoing,
            model=self.model,
            supports_tools=structured,
            tools=tools_for_llm(tools) if structured else None,
        )
        try:
            async for delta in stream:
                if state.cancelled:
                    break

                if pending is None:
                    pending = Message.assistant("", model=delta.model or self.model)
                    transcript.append(pending)
                    state.active_stream = pending
                    state.thinking = False

                pending.content += delta.content
                pending.apply_delta_metadata(delta.metadata)
                if delta.done_reason:
                    pending.metadata["done_reason"] = delta.done_reason

                if delta.tool_call is not None:
                    fragments = delta.tool_call if fragments is None else fragments.merge(delta.tool_call)
                call = fragments if fragments is not None and fragments.is_complete else None
                if call is None and not structured:
                    call = parse_tool_call(pending.content)
                if call is not None:
                    pending.tool_call = call
                    break

                if delta.done:
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return pending

    async def _execute(self, chat_id: str, state: TurnState, reply: Message) -> ToolResult:
        """Run the reply's tool call and settle its tool message."""
        call = reply.tool_call
        if call.id is None:
            call.id = new_id()
        reply.finalize()
        await self._persist("add_message", reply, chat_id)
        state.active_stream = None

        tool_message = Message.tool_scaffold(call)
        self._transcript(chat_id).append(tool_message)
        state.pending_tool_message = tool_message
        await self._persist("add_message", tool_message, chat_id)

        args = call.args or {}
        self._event_log.info(
            "tool", f"Calling {call.name}", chat_id=chat_id, server_url=call.server,
            request_id=call.id, arguments=args,
        )
        errors = self._tools.validate_tool_arguments(call.server, call.name, args)
        if errors:
            outcome = ToolResult.failure(f"{INVALID_ARGUMENTS_PREFIX}: {'; '.join(errors)}")
        else:
            outcome = await self._call_tool(state, call, args)

        if tool_message.is_settled:
            outcome = tool_message.tool_result
        else:
            if state.cancelled:
                outcome = ToolResult.cancelled()
            tool_message.settle(outcome)
        state.pending_tool_message = None

        await self._persist(
            "update_message", tool_message,
            new_content=tool_message.content, new_tool_result=outcome,
        )
        if outcome.ok:
            self._event_log.info("tool", f"{call.name} succeeded", chat_id=chat_id, request_id=call.id)
        else:
            self._event_log.warn(
                "tool", f"{call.name} failed: {outcome.error}", chat_id=chat_id, request_id=call.id,
            )
        return outcome

    async def _call_tool(self, state: TurnState, call: ToolCall, args: Dict[str, Any]) -> ToolResult:
        """
        Await the tool call unless the turn is cancelled first.

        A cancelled call keeps running to completion in the background and
        its result is discarded.
        """
        call_task = asyncio.ensure_future(
            self._tools.call(call.server, call.name, args, timeout=self.tool_timeout)
        )
        cancel_wait = asyncio.ensure_future(state.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_wait.cancel()

        if call_task in done:
            return call_task.result()

        self._orphaned_calls.add(call_task)
        call_task.add_done_callback(self._discard_orphan)
        return ToolResult.cancelled()

    def _discard_orphan(self, task: asyncio.Task) -> None:
        self._orphaned_calls.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Discarded tool call failed after cancellation: %s", task.exception())

    # Persistence mirror

    async def _persist(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        """Call a store operation; failures are logged and never end the turn."""
        if self._store is None:
            return None
        method = getattr(self._store, operation, None)
        if method is None:
            return None
        try:
            result = method(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.warning("Message store %s failed: %s", operation, e)
            self._event_log.warn("store", f"{operation} failed", error=str(e))
            return None

    async def _delete_stored(self, message_ids: List[str]) -> None:
        if self._store is not None and hasattr(self._store, "delete_messages"):
            await self._persist("delete_messages", message_ids)
            return
        for message_id in message_ids:
            await self._persist("delete_message", message_id)
