"""Tool interface, registry and text-mode tool-call protocol.

Providers without native tool support get the tool specs as instructions in
the system prompt and answer with blocks like::

    <tool_call>{"name": "read_file", "arguments": {"path": "notes.md"}}</tool_call>
"""

import inspect
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..errors import ToolExecutionFailure
from ..messages import ToolCall, ToolResult

logger = logging.getLogger("courier_agent.tools")

# Tool output beyond this is cut before it reaches the model.
MAX_TOOL_OUTPUT = 100_000

_TOOL_CALL_RE = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class Tool(ABC):
    """A callable the model may invoke.

    ``execute`` receives the parsed JSON arguments as keyword arguments and
    returns text. Raising ``ToolExecutionFailure`` (or any exception) yields
    an error result; the loop keeps going either way.
    """

    name: str = ""
    description: str = ""
    parameters: dict = {"type": "object", "properties": {}}

    @property
    def spec(self) -> ToolSpec:
        return ToolSpec(self.name, self.description, self.parameters)

    @abstractmethod
    async def execute(self, **kwargs) -> str:
        ...


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError(f"{type(tool).__name__} has no name")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, call: ToolCall) -> ToolResult:
        """Run one tool call. Failures come back as error results, never raised."""
        tool = self._tools.get(call.name)
        try:
            if tool is None:
                raise ToolExecutionFailure(call.name, "unknown tool")
            _check_arguments(tool, call.arguments)
            output = await tool.execute(**call.arguments)
        except ToolExecutionFailure as exc:
            logger.info("Tool %s failed: %s", call.name, exc.detail)
            return ToolResult(call.id, call.name, f"[error: {exc.detail}]", is_error=True)
        except Exception as exc:
            logger.warning("Tool %s raised %s", call.name, type(exc).__name__, exc_info=True)
            return ToolResult(call.id, call.name, f"[error: {type(exc).__name__}: {exc}]", is_error=True)

        output = str(output) if output is not None else ""
        if len(output) > MAX_TOOL_OUTPUT:
            output = output[:MAX_TOOL_OUTPUT] + "\n... [truncated]"
        return ToolResult(call.id, call.name, output or "[no output]")


def _check_arguments(tool: Tool, arguments: dict) -> None:
    if not isinstance(arguments, dict):
        raise ToolExecutionFailure(tool.name, "arguments must be an object")
    try:
        inspect.signature(tool.execute).bind(**arguments)
    except TypeError as exc:
        raise ToolExecutionFailure(tool.name, f"invalid arguments: {exc}") from exc


def format_tool_instructions(specs: list[ToolSpec]) -> str:
    """Render tool specs as system-prompt text for providers without native tools."""
    if not specs:
        return ""
    lines = [
        "## Tools",
        "You can call tools. To call one, reply with a block of the form:",
        '<tool_call>{"name": "<tool name>", "arguments": {...}}</tool_call>',
        "You may emit several blocks in one reply. Results come back as tool messages.",
        "When you have the final answer, reply with plain text and no tool_call blocks.",
        "",
        "Available tools:",
    ]
    for spec in specs:
        lines.append(f"- {spec.name}: {spec.description}")
        lines.append(f"  parameters: {json.dumps(spec.parameters, sort_keys=True)}")
    return "\n".join(lines)


def parse_tool_calls(text: str) -> tuple[str, list[ToolCall]]:
    """Extract ``<tool_call>`` blocks from model text.

    Returns the text with the blocks removed, plus the parsed calls.
    Malformed blocks are logged and skipped.
    """
    calls: list[ToolCall] = []
    for raw in _TOOL_CALL_RE.findall(text):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed tool_call block: %.200s", raw)
            continue
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            logger.warning("Skipping tool_call block without a name: %.200s", raw)
            continue
        arguments = data.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                arguments = {"input": arguments}
        calls.append(ToolCall(name=data["name"], arguments=arguments))
    cleaned = _TOOL_CALL_RE.sub("", text).strip()
    return cleaned, calls
