"""
Tool manifest generation.

Builds the system message that enumerates the available tools for each
model request, and the machine-readable tool list sent alongside it to
models with structured tool support.
"""
import json
from typing import Any, Dict, Iterable, List

from ...constants import TOOL_CALL_SENTINEL, TOOL_RESULT_SENTINEL
from ...mcp.mcp_server_client import MCPTool
from ...utils import server_name_from_url


STRUCTURED_PREFIX = """You can call external tools when needed.
Request a tool through the tool-calling interface, one call at a time, and wait
for its result before continuing. Tool results arrive as messages with the
"tool" role containing a JSON object with either "result" or "error".

Available tools:
"""

SENTINEL_PREFIX = f"""You can call external tools when needed.

When you need a tool, output exactly one line in this format and nothing else:
{TOOL_CALL_SENTINEL} {{"server": "<server>", "name": "<tool>", "args": {{ /* json args */ }}}}

Example:
{TOOL_CALL_SENTINEL} {{"server": "local", "name": "calculator", "args": {{"expression": "2+2"}}}}

After execution, you'll receive a line starting with `{TOOL_RESULT_SENTINEL}` containing a JSON
object with `name`, and either `result` or `error`. Use it to finalize your answer.

Available tools:
"""

NO_TOOLS_LINE = "  - No tools available."


def group_by_server(tools: Iterable[MCPTool]) -> Dict[str, List[MCPTool]]:
    """Group tools by server display name, keeping first-seen order."""
    grouped: Dict[str, List[MCPTool]] = {}
    for tool in tools:
        if tool.server_name:
            server = tool.server_name
        else:
            server = server_name_from_url(tool.server) if tool.server else "connected"
        grouped.setdefault(server, []).append(tool)
    return grouped


def generate_tool_system_prompt(tools: Iterable[MCPTool], structured: bool = True) -> str:
    """Generate the tool manifest system prompt.

    Args:
        tools: Tools available to the model.
        structured: Whether the model supports structured tool calls. When
            False, the prompt teaches the text-sentinel protocol instead.

    Returns:
        System prompt text.
    """
    lines = [STRUCTURED_PREFIX if structured else SENTINEL_PREFIX]
    grouped = group_by_server(tools)
    if not grouped:
        lines.append(NO_TOOLS_LINE)
        return "\n".join(lines)

    for server, server_tools in grouped.items():
        lines.append(f"Server: `{server}`")
        for tool in server_tools:
            lines.append(f"  - `{tool.name}`: {tool.description}")
            lines.append(f"    Args schema: {json.dumps(tool.parameters, ensure_ascii=False, sort_keys=True)}")
    return "\n".join(lines)


def tools_for_llm(tools: Iterable[MCPTool]) -> List[Dict[str, Any]]:
    """Machine-readable manifest in the function-calling format."""
    return [tool.to_llm_function() for tool in tools]
