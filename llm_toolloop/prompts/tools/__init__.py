"""Tool manifest and text-sentinel helpers."""
from .catalog import generate_tool_system_prompt, tools_for_llm
from .parser import format_tool_call, format_tool_result, parse_tool_call

__all__ = [
    'generate_tool_system_prompt',
    'tools_for_llm',
    'format_tool_call',
    'format_tool_result',
    'parse_tool_call',
]
