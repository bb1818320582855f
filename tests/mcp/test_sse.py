"""
Tests for SSE decoding, envelope unwrapping and session discovery.
"""

import json

import allure
from hypothesis import given, settings, strategies as st

from llm_toolloop.mcp.sse import (
    ENDPOINT_EVENT,
    SSEDecoder,
    extract_messages,
    parse_session_endpoint,
    unwrap_envelope,
)


BASE = "https://gateway.example.com/servers/tools"

RPC = {"jsonrpc": "2.0", "id": "1", "result": {"ok": True}}


def feed_all(decoder, lines):
    events = []
    for line in lines:
        event = decoder.feed(line)
        if event is not None:
            events.append(event)
    return events


@allure.feature("SSE")
@allure.story("Event framing")
@allure.severity(allure.severity_level.CRITICAL)
def test_multiline_data_is_joined_and_dispatched_on_blank_line():
    decoder = SSEDecoder()
    events = feed_all(decoder, [
        "event: message",
        "data: {\"a\":",
        "data: 1}",
        ": keep-alive comment",
        "id: 7",
        "",
    ])
    assert len(events) == 1
    assert events[0].event == "message"
    assert events[0].data == "{\"a\":\n1}"


@allure.feature("SSE")
@allure.story("Event framing")
@allure.severity(allure.severity_level.NORMAL)
def test_event_name_defaults_to_message_and_resets():
    decoder = SSEDecoder()
    events = feed_all(decoder, [
        "event: endpoint",
        "data: /message?sessionId=abc",
        "",
        "data: {}",
        "",
    ])
    assert [e.event for e in events] == ["endpoint", "message"]


@allure.feature("SSE")
@allure.story("Bare session lines")
@allure.severity(allure.severity_level.NORMAL)
def test_bare_session_line_becomes_endpoint_event():
    decoder = SSEDecoder()
    event = decoder.feed("/sse?sessionid=xyz")
    assert event is not None
    assert event.event == ENDPOINT_EVENT
    assert event.data == "/sse?sessionid=xyz"


@allure.feature("SSE")
@allure.story("Envelope unwrapping")
@allure.severity(allure.severity_level.CRITICAL)
def test_unwrap_nested_envelopes_strings_and_batches():
    wrapped = {"payload": {"message": json.dumps({"data": [RPC, {"jsonrpc": "2.0", "method": "x"}]})}}
    messages = unwrap_envelope(wrapped)
    assert messages == [RPC, {"jsonrpc": "2.0", "method": "x"}]


@allure.feature("SSE")
@allure.story("Envelope unwrapping")
@allure.severity(allure.severity_level.CRITICAL)
@settings(max_examples=100)
@given(depth=st.integers(min_value=0, max_value=40), key=st.sampled_from(["data", "message", "payload"]))
def test_unwrap_is_bounded(depth, key):
    """
    For any nesting depth, unwrapping terminates and only returns the
    message when it sits within the depth cap.
    """
    value = RPC
    for _ in range(depth):
        value = {key: value}
    messages = unwrap_envelope(value, max_depth=8)
    if depth <= 8:
        assert messages == [RPC]
    else:
        assert messages == []


@allure.feature("SSE")
@allure.story("Done marker")
@allure.severity(allure.severity_level.NORMAL)
def test_done_marker_and_garbage_are_dropped():
    assert extract_messages("[DONE]") == []
    assert extract_messages("not json") == []
    assert extract_messages(json.dumps(RPC)) == [RPC]


@allure.feature("SSE")
@allure.story("Session discovery")
@allure.severity(allure.severity_level.CRITICAL)
def test_message_shape_prefers_message_endpoint():
    endpoints = parse_session_endpoint("/message?sessionId=abc123", BASE)
    assert endpoints.session_id == "abc123"
    assert endpoints.preferred == "https://gateway.example.com/message?sessionId=abc123"
    assert endpoints.canonical == "https://gateway.example.com/sse?sessionid=abc123"
    assert endpoints.targets() == [endpoints.preferred, endpoints.canonical]


@allure.feature("SSE")
@allure.story("Session discovery")
@allure.severity(allure.severity_level.CRITICAL)
def test_lowercase_shape_uses_canonical_only():
    endpoints = parse_session_endpoint("?sessionid=s1", BASE)
    assert endpoints.preferred == "https://gateway.example.com/sse?sessionid=s1"
    assert endpoints.canonical is None
    assert endpoints.targets() == [endpoints.preferred]


@allure.feature("SSE")
@allure.story("Session discovery")
@allure.severity(allure.severity_level.NORMAL)
def test_session_id_path_is_used_verbatim():
    endpoints = parse_session_endpoint("/messages/?session_id=42ab", BASE)
    assert endpoints.session_id == "42ab"
    assert endpoints.preferred == "https://gateway.example.com/messages/?session_id=42ab"


@allure.feature("SSE")
@allure.story("Session discovery")
@allure.severity(allure.severity_level.NORMAL)
def test_json_endpoint_payload_and_missing_session():
    endpoints = parse_session_endpoint(json.dumps({"endpoint": "/message?sessionId=j1"}), BASE)
    assert endpoints.session_id == "j1"
    assert parse_session_endpoint("/message", BASE) is None
    assert parse_session_endpoint("", BASE) is None
