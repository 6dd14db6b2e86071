from .base import Tool, ToolRegistry, ToolSpec, format_tool_instructions, parse_tool_calls

__all__ = ["Tool", "ToolRegistry", "ToolSpec", "format_tool_instructions", "parse_tool_calls"]
