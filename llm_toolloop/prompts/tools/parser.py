"""
Text-sentinel tool-call protocol.

Models without structured tool support are asked to emit a single line

    TOOL_CALL: {"server": "<server>", "name": "<tool>", "args": {...}}

and receive results back as ``TOOL_RESULT: {...}`` lines.
"""
import json
import logging
from typing import Any, Optional

from ...constants import TOOL_CALL_SENTINEL, TOOL_RESULT_SENTINEL
from ...messages import ToolCall

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()


def parse_tool_call(text: str) -> Optional[ToolCall]:
    """Parse the first ``TOOL_CALL:`` object in ``text``.

    Text after the JSON object is ignored, so a call can be detected while
    the model is still streaming trailing output.

    Args:
        text: Accumulated model output.

    Returns:
        The parsed call, or None if there is no complete, valid call yet.
    """
    if not text:
        return None
    idx = text.find(TOOL_CALL_SENTINEL)
    if idx == -1:
        return None
    remainder = text[idx + len(TOOL_CALL_SENTINEL):].lstrip()
    if not remainder.startswith("{"):
        return None
    try:
        obj, _ = _decoder.raw_decode(remainder)
    except json.JSONDecodeError:
        return None
    call = ToolCall.from_dict(obj)
    if call is None or not call.is_complete:
        logger.debug("Ignoring incomplete TOOL_CALL payload: %s", remainder[:200])
        return None
    return call


def format_tool_call(call: ToolCall) -> str:
    """Render a call in sentinel form."""
    payload = {"server": call.server, "name": call.name, "args": call.args or {}}
    return f"{TOOL_CALL_SENTINEL} {json.dumps(payload, ensure_ascii=False)}"


def format_tool_result(tool_name: Optional[str], result: Any, error: Optional[str] = None) -> str:
    """Render a tool outcome as a ``TOOL_RESULT:`` line."""
    payload: dict[str, Any] = {"name": tool_name}
    if result is not None:
        payload["result"] = result
    if error is not None:
        payload["error"] = error
    return f"{TOOL_RESULT_SENTINEL} {json.dumps(payload, ensure_ascii=False, default=str)}"
