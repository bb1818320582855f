"""
Tests for the turn controller: the streaming tool-call loop.

Covers the multi-tool round trip, the tool call bound, validation
short-circuiting, both cancellation paths, capability caching, the
text-sentinel fallback, chat-level errors and transcript editing.
"""

import asyncio

import allure
import httpx
import pytest
from hypothesis import given, settings, strategies as st

from llm_toolloop.constants import CANCELLED
from llm_toolloop.errors import GENERIC_ERROR_MESSAGE, NETWORK_LOST_MESSAGE, ToolLoopError
from llm_toolloop.llm.base import StreamDelta
from llm_toolloop.mcp.mcp_manager import MCPManager
from llm_toolloop.messages import Role, ToolCall
from llm_toolloop.turn_controller import TurnController, TurnOutcome

from fakes import (
    ChannelFactory,
    FakeToolClient,
    MemoryStore,
    ScriptedLLM,
    always_tool_script,
    echo_call_delta,
    multi_tool_script,
    tool_messages,
)


CHAT = "chat-1"


def roles(messages):
    return [m.role for m in messages]


def final_after_tools(count, text="done"):
    """Script: echo calls until ``count`` tool messages exist, then answer."""
    def script(messages, call_number):
        if len(tool_messages(messages)) < count:
            return [echo_call_delta(f"call-{call_number}")]
        return [StreamDelta(content=text, done=True)]
    return script


@allure.feature("Turn Controller")
@allure.story("Multi-tool round trip")
@allure.severity(allure.severity_level.BLOCKER)
@pytest.mark.asyncio
async def test_multi_tool_round_trip():
    llm = ScriptedLLM(multi_tool_script)
    tools = FakeToolClient()
    controller = TurnController(llm, tools, model="test-model")

    outcome = await controller.send_prompt(CHAT, "Trigger multi-tool call")

    messages = controller.messages(CHAT)
    assert outcome == TurnOutcome.FINAL
    assert roles(messages) == [
        Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT,
    ]
    assert messages[0].content == "Trigger multi-tool call"
    assert messages[1].tool_call.name == "local.echo"
    assert messages[1].tool_call.args == {"text": "first"}
    assert messages[2].tool_result.result == {"text": "first"}
    assert messages[2].tool_call is messages[1].tool_call
    assert messages[3].tool_call.args == {"text": "second"}
    assert messages[4].tool_result.result == {"text": "second"}
    assert messages[5].content == "Final response: second"
    assert messages[5].tool_call is None
    assert messages[5].metadata["done_reason"] == "stop"
    assert len(llm.calls) == 3
    assert [c[2] for c in tools.calls] == [{"text": "first"}, {"text": "second"}]
    assert not controller.is_streaming(CHAT)


@allure.feature("Turn Controller")
@allure.story("Tool manifest")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_each_generation_gets_a_tool_manifest():
    llm = ScriptedLLM(multi_tool_script)
    controller = TurnController(llm, FakeToolClient())

    await controller.send_prompt(CHAT, "go")

    for call in llm.calls:
        manifest = call["messages"][0]
        assert manifest.role == Role.SYSTEM
        assert "local.echo" in manifest.content
        assert call["supports_tools"] is True
        assert call["tools"][0]["function"]["name"] == "local.echo"
    # The manifest is synthesized per request and never enters the transcript
    assert Role.SYSTEM not in roles(controller.messages(CHAT))


@allure.feature("Turn Controller")
@allure.story("Bounded tool loop")
@allure.severity(allure.severity_level.BLOCKER)
@settings(max_examples=30, deadline=None)
@given(limit=st.integers(min_value=1, max_value=8))
def test_tool_loop_is_bounded(limit):
    """
    For any tool call limit, a model that keeps requesting tools stops
    after exactly ``limit`` calls with a bound-exceeded message.
    """
    async def scenario():
        llm = ScriptedLLM(always_tool_script)
        tools = FakeToolClient()
        controller = TurnController(llm, tools, max_tool_calls_per_turn=limit)
        outcome = await controller.send_prompt(CHAT, "loop forever")
        return controller, llm, tools, outcome

    controller, llm, tools, outcome = asyncio.run(scenario())

    assert outcome == TurnOutcome.BOUND_EXCEEDED
    assert len(tools.calls) == limit
    assert len(llm.calls) == limit
    last = controller.messages(CHAT)[-1]
    assert last.role == Role.ASSISTANT
    assert str(limit) in last.content
    assert last.metadata["error"] == "max_tool_calls"


@allure.feature("Turn Controller")
@allure.story("Sequential single flight")
@allure.severity(allure.severity_level.CRITICAL)
@settings(max_examples=30, deadline=None)
@given(count=st.integers(min_value=0, max_value=5))
def test_tool_calls_are_sequential(count):
    """
    For any turn with N tool calls, call k+1 starts only after call k's
    result message is settled in the transcript.
    """
    violations = []

    async def scenario():
        tools = FakeToolClient()
        controller = TurnController(ScriptedLLM(final_after_tools(count)), tools)

        def check():
            settled = [m.is_settled for m in tool_messages(controller.messages(CHAT))]
            # Only the call being issued now may be unsettled
            if not all(settled[:-1]) or settled[-1]:
                violations.append(settled)

        tools.on_call = check
        outcome = await controller.send_prompt(CHAT, "go")
        return controller, tools, outcome

    controller, tools, outcome = asyncio.run(scenario())

    assert outcome == TurnOutcome.FINAL
    assert violations == []
    assert len(tools.calls) == count
    assert len(tool_messages(controller.messages(CHAT))) == count


@allure.feature("Turn Controller")
@allure.story("Validation short-circuits execution")
@allure.severity(allure.severity_level.BLOCKER)
@settings(max_examples=50, deadline=None)
@given(args=st.dictionaries(
    st.text(min_size=1, max_size=6).filter(lambda k: k != "text"),
    st.one_of(st.integers(), st.text(max_size=5), st.booleans()),
    max_size=3,
))
def test_invalid_arguments_never_reach_the_server(args):
    """
    For any argument set failing validation, the tool is never called and
    the tool message error mentions "Invalid arguments".
    """
    def script(messages, call_number):
        if not tool_messages(messages):
            return [StreamDelta(tool_call=ToolCall(server="local", name="local.echo", args=args))]
        return [StreamDelta(content="recovered", done=True)]

    async def scenario():
        tools = FakeToolClient()
        controller = TurnController(ScriptedLLM(script), tools)
        outcome = await controller.send_prompt(CHAT, "go")
        return controller, tools, outcome

    controller, tools, outcome = asyncio.run(scenario())

    assert tools.calls == []
    tool_message = tool_messages(controller.messages(CHAT))[0]
    assert "Invalid arguments" in tool_message.tool_result.error
    assert 'missing required property "text"' in tool_message.tool_result.error
    assert outcome == TurnOutcome.FINAL
    assert controller.messages(CHAT)[-1].content == "recovered"


@allure.feature("Turn Controller")
@allure.story("Unknown tool")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_unknown_tool_is_reported_without_a_call():
    def script(messages, call_number):
        if not tool_messages(messages):
            return [StreamDelta(tool_call=ToolCall(name="missing.tool", args={}))]
        return [StreamDelta(content="ok", done=True)]

    tools = FakeToolClient()
    controller = TurnController(ScriptedLLM(script), tools)

    await controller.send_prompt(CHAT, "go")

    error = tool_messages(controller.messages(CHAT))[0].tool_result.error
    assert "Unknown tool: missing.tool" in error
    assert tools.calls == []


@allure.feature("Turn Controller")
@allure.story("Server error scenario")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_server_error_is_injected_and_turn_finishes():
    def script(messages, call_number):
        if not tool_messages(messages):
            return [echo_call_delta("boom")]
        return [StreamDelta(content="The tool failed.", done=True)]

    manager = MCPManager(channel_factory=ChannelFactory())
    assert await manager.connect("ws://tools.test/mcp", name="local")
    controller = TurnController(ScriptedLLM(script), manager)

    try:
        outcome = await controller.send_prompt(CHAT, "go")
    finally:
        await manager.disconnect_all()

    tool_message = tool_messages(controller.messages(CHAT))[0]
    assert "Server error" in tool_message.tool_result.error
    assert tool_message.tool_result.result is None
    assert tool_message.content.startswith("Error: ")
    assert outcome == TurnOutcome.FINAL
    assert controller.messages(CHAT)[-1].content == "The tool failed."


@allure.feature("Turn Controller")
@allure.story("Round trip through a tool server")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_round_trip_through_manager_and_rpc():
    factory = ChannelFactory()
    manager = MCPManager(channel_factory=factory)
    assert await manager.connect("ws://tools.test/mcp", name="local")
    llm = ScriptedLLM(multi_tool_script)
    controller = TurnController(llm, manager)

    try:
        outcome = await controller.send_prompt(CHAT, "Trigger multi-tool call")
    finally:
        await manager.disconnect_all()

    messages = controller.messages(CHAT)
    assert outcome == TurnOutcome.FINAL
    assert len(messages) == 6
    assert messages[2].tool_result.result == {"text": "first"}
    assert messages[4].tool_result.result == {"text": "second"}
    assert len(llm.calls) == 3
    calls = [m for m in factory.last.sent if m.get("method") == "tools/call"]
    assert [c["params"]["arguments"]["text"] for c in calls] == ["first", "second"]


@allure.feature("Turn Controller")
@allure.story("Cancellation during streaming")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_cancel_during_streaming_keeps_partial_content():
    holder = {}

    def script(messages, call_number):
        return [
            StreamDelta(content="Partial "),
            lambda: holder["controller"].cancel(CHAT),
            StreamDelta(content="never seen"),
        ]

    llm = ScriptedLLM(script)
    store = MemoryStore()
    controller = TurnController(llm, FakeToolClient(), store=store)
    holder["controller"] = controller

    outcome = await controller.send_prompt(CHAT, "go")

    messages = controller.messages(CHAT)
    assert outcome == TurnOutcome.CANCELLED
    assert roles(messages) == [Role.USER, Role.ASSISTANT]
    assert messages[1].content == "Partial "
    assert messages[1].id in store.rows
    assert len(llm.calls) == 1
    assert llm.closed_streams == 1
    assert not controller.is_streaming(CHAT)
    assert controller.cancel(CHAT) is False


@allure.feature("Turn Controller")
@allure.story("Cancellation during tool execution")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_cancel_during_tool_execution_discards_late_result():
    tools = FakeToolClient()
    tools.gate = asyncio.Event()
    llm = ScriptedLLM(always_tool_script)
    controller = TurnController(llm, tools)
    tools.on_call = lambda: asyncio.get_running_loop().call_soon(controller.cancel, CHAT)

    outcome = await controller.send_prompt(CHAT, "go")

    tool_message = tool_messages(controller.messages(CHAT))[0]
    assert outcome == TurnOutcome.CANCELLED
    assert tool_message.tool_result.error == CANCELLED
    assert tool_message.tool_result.result is None
    assert len(llm.calls) == 1
    assert tools.completed == 0

    # The remote call is allowed to finish; its result is dropped
    tools.gate.set()
    for _ in range(5):
        await asyncio.sleep(0)
    assert tools.completed == 1
    assert tool_message.tool_result.error == CANCELLED
    assert controller.messages(CHAT)[-1] is tool_message


@allure.feature("Turn Controller")
@allure.story("Cancel a single tool call")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_cancel_tool_call_is_idempotent():
    tools = FakeToolClient()
    tools.gate = asyncio.Event()
    controller = TurnController(ScriptedLLM(always_tool_script), tools)
    results = []

    def cancel_pending():
        pending = controller.messages(CHAT)[-1]
        results.append(controller.cancel_tool_call(pending.id))
        results.append(controller.cancel_tool_call(pending.id))

    tools.on_call = lambda: asyncio.get_running_loop().call_soon(cancel_pending)

    outcome = await controller.send_prompt(CHAT, "go")

    tool_message = tool_messages(controller.messages(CHAT))[0]
    assert results == [True, False]
    assert outcome == TurnOutcome.CANCELLED
    assert tool_message.tool_result.error == CANCELLED
    assert controller.cancel_tool_call(tool_message.id) is False
    tools.gate.set()
    for _ in range(5):
        await asyncio.sleep(0)
    assert tool_message.tool_result.error == CANCELLED


@allure.feature("Turn Controller")
@allure.story("Cancel a single tool call")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_cancel_tool_call_on_settled_message_is_noop():
    controller = TurnController(ScriptedLLM(multi_tool_script), FakeToolClient())
    await controller.send_prompt(CHAT, "go")

    settled = tool_messages(controller.messages(CHAT))[0]
    before = settled.tool_result

    assert controller.cancel_tool_call(settled.id) is False
    assert settled.tool_result is before
    assert settled.tool_result.result == {"text": "first"}


@allure.feature("Turn Controller")
@allure.story("Thinking indicator re-armed per generation")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_thinking_is_rearmed_for_every_generation():
    holder = {}
    seen = []

    def script(messages, call_number):
        seen.append(holder["controller"].is_thinking(CHAT))
        return multi_tool_script(messages, call_number)

    controller = TurnController(ScriptedLLM(script), FakeToolClient())
    holder["controller"] = controller

    outcome = await controller.send_prompt(CHAT, "go")

    assert outcome == TurnOutcome.FINAL
    assert seen == [True, True, True]
    assert not controller.is_thinking(CHAT)


@allure.feature("Turn Controller")
@allure.story("Fragmented tool calls")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_tool_call_fragments_are_merged():
    def script(messages, call_number):
        if not tool_messages(messages):
            return [
                StreamDelta(content="Let me check. "),
                StreamDelta(tool_call=ToolCall(name="local.echo")),
                StreamDelta(tool_call=ToolCall(id="call-1", args={"text": "merged"})),
                StreamDelta(content="ignored after detection"),
            ]
        return [StreamDelta(content="done", done=True)]

    tools = FakeToolClient()
    controller = TurnController(ScriptedLLM(script), tools)

    await controller.send_prompt(CHAT, "go")

    assistant = controller.messages(CHAT)[1]
    assert assistant.content == "Let me check. "
    assert assistant.tool_call.id == "call-1"
    assert assistant.tool_call.name == "local.echo"
    assert tools.calls == [(None, "local.echo", {"text": "merged"})]


@allure.feature("Turn Controller")
@allure.story("Model capability cache")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_capability_lookup_is_cached_per_model():
    llm = ScriptedLLM(lambda messages, n: [StreamDelta(content="hi", done=True)])
    controller = TurnController(llm, FakeToolClient(), model="m1")

    await controller.send_prompt(CHAT, "one")
    await controller.send_prompt(CHAT, "two")
    assert llm.capability_lookups == ["m1"]

    controller.set_supports_tools_for_model("m1", False)
    await controller.send_prompt(CHAT, "three")
    assert llm.calls[-1]["supports_tools"] is False
    assert llm.calls[-1]["tools"] is None

    controller.invalidate_capabilities("m1")
    await controller.send_prompt(CHAT, "four")
    assert llm.capability_lookups == ["m1", "m1"]
    assert llm.calls[-1]["supports_tools"] is True

    controller.model = "m2"
    controller.invalidate_capabilities()
    await controller.send_prompt(CHAT, "five")
    assert llm.capability_lookups == ["m1", "m1", "m2"]


@allure.feature("Turn Controller")
@allure.story("Text-sentinel fallback")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_sentinel_tool_call_for_models_without_tool_support():
    def script(messages, call_number):
        if not tool_messages(messages):
            return [
                StreamDelta(content='TOOL_CALL: {"server": "local", "name": "local.echo", '),
                StreamDelta(content='"args": {"text": "hi"}}'),
            ]
        return [StreamDelta(content="It said hi.", done=True)]

    llm = ScriptedLLM(script, supports=False)
    tools = FakeToolClient()
    controller = TurnController(llm, tools)

    outcome = await controller.send_prompt(CHAT, "go")

    assert outcome == TurnOutcome.FINAL
    assert tools.calls == [("local", "local.echo", {"text": "hi"})]
    assert "TOOL_CALL:" in llm.calls[0]["messages"][0].content
    assert llm.calls[0]["tools"] is None

    injected = llm.calls[1]["messages"][-1].to_chat_dict(structured=False)
    assert injected["role"] == "user"
    assert injected["content"].startswith("TOOL_RESULT:")
    assert '"hi"' in injected["content"]
    assert controller.messages(CHAT)[-1].content == "It said hi."


@allure.feature("Turn Controller")
@allure.story("Chat-level errors")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_network_loss_becomes_chat_error():
    llm = ScriptedLLM(lambda messages, n: [httpx.ConnectError("connection refused")])
    controller = TurnController(llm, FakeToolClient())

    outcome = await controller.send_prompt(CHAT, "go")

    error = controller.get_chat_error(CHAT)
    assert outcome == TurnOutcome.ERROR
    assert error.kind == "network"
    assert error.message == NETWORK_LOST_MESSAGE
    assert roles(controller.messages(CHAT)) == [Role.USER]
    assert not controller.is_streaming(CHAT)

    controller.clear_chat_error(CHAT)
    assert controller.get_chat_error(CHAT) is None


@allure.feature("Turn Controller")
@allure.story("Chat-level errors")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_unexpected_error_keeps_partial_message():
    llm = ScriptedLLM(lambda messages, n: [StreamDelta(content="half"), RuntimeError("kaboom")])
    store = MemoryStore()
    controller = TurnController(llm, FakeToolClient(), store=store)

    outcome = await controller.send_prompt(CHAT, "go")

    assert outcome == TurnOutcome.ERROR
    assert controller.get_chat_error(CHAT).message == GENERIC_ERROR_MESSAGE
    partial = controller.messages(CHAT)[-1]
    assert partial.content == "half"
    assert partial.id in store.rows

    # The next successful turn clears the error
    llm.script = lambda messages, n: [StreamDelta(content="fine", done=True)]
    assert await controller.send_prompt(CHAT, "again") == TurnOutcome.FINAL
    assert controller.get_chat_error(CHAT) is None


@allure.feature("Turn Controller")
@allure.story("Chat-level errors")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_unexpected_error_during_tool_call_settles_tool_message():
    """
    An exception escaping the tool client still settles the tool message,
    and the assistant reply that requested it is stored exactly once.
    """
    def broken(name, args):
        raise RuntimeError("tool client bug")

    store = MemoryStore()
    controller = TurnController(
        ScriptedLLM(always_tool_script), FakeToolClient(handler=broken), store=store,
    )

    outcome = await controller.send_prompt(CHAT, "go")

    messages = controller.messages(CHAT)
    assert outcome == TurnOutcome.ERROR
    assert roles(messages) == [Role.USER, Role.ASSISTANT, Role.TOOL]
    tool_message = messages[2]
    assert tool_message.is_settled
    assert tool_message.tool_result.error == GENERIC_ERROR_MESSAGE
    assert store.rows[tool_message.id][1].tool_result.error == GENERIC_ERROR_MESSAGE
    assert store.operations.count("add") == 3
    assert store.operations.count("update") == 1


@allure.feature("Turn Controller")
@allure.story("One turn per chat")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_second_prompt_during_a_turn_is_rejected():
    tools = FakeToolClient()
    tools.gate = asyncio.Event()
    controller = TurnController(ScriptedLLM(final_after_tools(1)), tools)

    turn = asyncio.create_task(controller.send_prompt(CHAT, "first"))
    while not tools.calls:
        await asyncio.sleep(0)

    assert controller.is_streaming(CHAT)
    with pytest.raises(ToolLoopError):
        await controller.send_prompt(CHAT, "second")

    tools.gate.set()
    assert await turn == TurnOutcome.FINAL
    assert [m.content for m in controller.messages(CHAT) if m.role == Role.USER] == ["first"]


@allure.feature("Turn Controller")
@allure.story("Chats are isolated")
@allure.severity(allure.severity_level.CRITICAL)
@pytest.mark.asyncio
async def test_concurrent_chats_do_not_interfere():
    controller = TurnController(ScriptedLLM(multi_tool_script), FakeToolClient())

    outcomes = await asyncio.gather(
        controller.send_prompt("a", "first chat"),
        controller.send_prompt("b", "second chat"),
    )

    assert outcomes == [TurnOutcome.FINAL, TurnOutcome.FINAL]
    for chat in ("a", "b"):
        messages = controller.messages(chat)
        assert len(messages) == 6
        assert messages[-1].content == "Final response: second"
    assert controller.messages("a")[0].content == "first chat"
    assert controller.messages("b")[0].content == "second chat"


@allure.feature("Turn Controller")
@allure.story("Persistence mirror")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_transcript_is_mirrored_and_reloadable():
    store = MemoryStore()
    first = TurnController(ScriptedLLM(multi_tool_script), FakeToolClient(), store=store)
    await first.send_prompt(CHAT, "go")

    second = TurnController(ScriptedLLM(multi_tool_script), FakeToolClient(), store=store)
    loaded = await second.load_chat(CHAT)

    assert [m.id for m in loaded] == [m.id for m in first.messages(CHAT)]
    assert loaded[2].tool_result.result == {"text": "first"}
    assert store.operations.count("update") == 2


@allure.feature("Turn Controller")
@allure.story("Persistence mirror")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_failing_store_does_not_break_the_turn():
    class BrokenStore:
        def add_message(self, message, chat_id):
            raise OSError("disk full")

    controller = TurnController(ScriptedLLM(multi_tool_script), FakeToolClient(), store=BrokenStore())

    outcome = await controller.send_prompt(CHAT, "go")

    assert outcome == TurnOutcome.FINAL
    assert len(controller.messages(CHAT)) == 6
    assert controller.event_log.recent(category="store")


@allure.feature("Turn Controller")
@allure.story("Retry and regenerate")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_retry_last_prompt_replaces_final_answer():
    store = MemoryStore()
    llm = ScriptedLLM(multi_tool_script)
    controller = TurnController(llm, FakeToolClient(), store=store)
    await controller.send_prompt(CHAT, "go")
    old_final = controller.messages(CHAT)[-1]

    outcome = await controller.retry_last_prompt(CHAT)

    messages = controller.messages(CHAT)
    assert outcome == TurnOutcome.FINAL
    assert len(messages) == 6
    assert messages[-1].id != old_final.id
    assert messages[-1].content == "Final response: second"
    assert old_final.id not in store.rows
    assert len(llm.calls) == 4


@allure.feature("Turn Controller")
@allure.story("Retry and regenerate")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_regenerate_from_user_message_reruns_the_turn():
    store = MemoryStore()
    llm = ScriptedLLM(multi_tool_script)
    controller = TurnController(llm, FakeToolClient(), store=store)
    await controller.send_prompt(CHAT, "go")
    original = controller.messages(CHAT)

    outcome = await controller.regenerate_message(CHAT, original[0].id)

    messages = controller.messages(CHAT)
    assert outcome == TurnOutcome.FINAL
    assert messages[0] is original[0]
    assert len(messages) == 6
    assert not set(m.id for m in original[1:]) & set(store.rows)
    assert len(llm.calls) == 6

    assert await controller.regenerate_message(CHAT, "no-such-id") is None


@allure.feature("Turn Controller")
@allure.story("Retry and regenerate")
@allure.severity(allure.severity_level.NORMAL)
@pytest.mark.asyncio
async def test_delete_message_and_retry_without_prompt():
    store = MemoryStore()
    controller = TurnController(
        ScriptedLLM(lambda messages, n: [StreamDelta(content="hello", done=True)]),
        FakeToolClient(),
        store=store,
    )
    await controller.send_prompt(CHAT, "hi")
    prompt, answer = controller.messages(CHAT)

    assert await controller.delete_message(CHAT, prompt.id) is True
    assert await controller.delete_message(CHAT, prompt.id) is False
    assert prompt.id not in store.rows
    assert controller.messages(CHAT) == [answer]

    assert await controller.retry_last_prompt(CHAT) is None
    assert controller.messages(CHAT) == []
