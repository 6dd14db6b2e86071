"""Tests for the tool registry, text-mode tool calls and built-in tools."""

import pytest

from courier_agent.messages import ToolCall
from courier_agent.tools.base import (
    MAX_TOOL_OUTPUT,
    Tool,
    ToolRegistry,
    ToolSpec,
    format_tool_instructions,
    parse_tool_calls,
)
from courier_agent.tools.builtin import (
    ExecuteCommandTool,
    ListFilesTool,
    ReadFileTool,
    WriteFileTool,
    default_tools,
    html_to_text,
)


class _Loud(Tool):
    name = "loud"

    async def execute(self) -> str:
        return "z" * (MAX_TOOL_OUTPUT + 10)


class _Silent(Tool):
    name = "silent"

    async def execute(self) -> str:
        return ""


class TestToolRegistry:
    @pytest.mark.asyncio
    async def test_executes_tool(self, registry, echo_tool):
        result = await registry.execute(ToolCall("echo", {"text": "hi"}, id="c1"))
        assert result.call_id == "c1"
        assert result.output == "echoed hi"
        assert not result.is_error
        assert echo_tool.calls == ["hi"]

    @pytest.mark.asyncio
    async def test_unknown_tool_is_error_result(self, registry):
        result = await registry.execute(ToolCall("nope"))
        assert result.is_error
        assert "unknown tool" in result.output

    @pytest.mark.asyncio
    async def test_bad_arguments_are_error_result(self, registry, echo_tool):
        result = await registry.execute(ToolCall("echo", {"wrong": 1}))
        assert result.is_error
        assert "invalid arguments" in result.output
        assert echo_tool.calls == []

    @pytest.mark.asyncio
    async def test_raising_tool_is_error_result(self, registry):
        result = await registry.execute(ToolCall("broken"))
        assert result.is_error
        assert result.output == "[error: RuntimeError: disk on fire]"

    @pytest.mark.asyncio
    async def test_output_truncated_and_empty_marked(self):
        reg = ToolRegistry([_Loud(), _Silent()])
        loud = await reg.execute(ToolCall("loud"))
        assert loud.output.endswith("[truncated]")
        assert len(loud.output) < MAX_TOOL_OUTPUT + 100
        assert (await reg.execute(ToolCall("silent"))).output == "[no output]"

    def test_register_requires_name(self):
        class Nameless(Tool):
            async def execute(self) -> str:
                return ""

        with pytest.raises(ValueError):
            ToolRegistry([Nameless()])

    def test_specs(self, registry):
        assert registry.names() == ["echo", "broken"]
        spec = registry.specs()[0]
        assert spec.to_openai()["function"]["name"] == "echo"
        assert len(registry) == 2


class TestTextToolCalls:
    def test_parse_single_call(self):
        text = 'Let me look.\n<tool_call>{"name": "read_file", "arguments": {"path": "a.md"}}</tool_call>'
        cleaned, calls = parse_tool_calls(text)
        assert cleaned == "Let me look."
        assert len(calls) == 1
        assert calls[0].name == "read_file"
        assert calls[0].arguments == {"path": "a.md"}

    def test_parse_multiple_and_string_arguments(self):
        text = (
            '<tool_call>{"name": "a", "arguments": "{\\"x\\": 1}"}</tool_call>'
            '<tool_call>{"name": "b", "arguments": "plain"}</tool_call>'
        )
        _, calls = parse_tool_calls(text)
        assert [c.name for c in calls] == ["a", "b"]
        assert calls[0].arguments == {"x": 1}
        assert calls[1].arguments == {"input": "plain"}
        assert calls[0].id != calls[1].id

    def test_malformed_blocks_skipped(self):
        text = "<tool_call>{not json}</tool_call><tool_call>[1, 2]</tool_call>answer"
        cleaned, calls = parse_tool_calls(text)
        assert calls == []
        assert cleaned == "answer"

    def test_plain_text_has_no_calls(self):
        assert parse_tool_calls("just an answer") == ("just an answer", [])

    def test_instructions_list_tools(self):
        text = format_tool_instructions([ToolSpec("echo", "Echo text back")])
        assert "<tool_call>" in text
        assert "- echo: Echo text back" in text
        assert format_tool_instructions([]) == ""


class TestBuiltinTools:
    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path):
        write = WriteFileTool(tmp_path)
        read = ReadFileTool(tmp_path)
        assert "wrote 5 bytes" in await write.execute("notes/a.txt", "hello")
        assert (tmp_path / "notes" / "a.txt").read_text() == "hello"
        assert await read.execute("notes/a.txt") == "hello"

    @pytest.mark.asyncio
    async def test_read_missing_file_is_error(self, tmp_path):
        reg = ToolRegistry([ReadFileTool(tmp_path)])
        result = await reg.execute(ToolCall("read_file", {"path": "missing.txt"}))
        assert result.is_error
        assert "file not found" in result.output

    @pytest.mark.asyncio
    async def test_protected_file_refused(self, tmp_path):
        target = tmp_path / "SOUL.md"
        target.write_text("keep")
        reg = ToolRegistry([WriteFileTool(tmp_path, protected={str(target)})])
        result = await reg.execute(ToolCall("write_file", {"path": "SOUL.md", "content": "x"}))
        assert result.is_error
        assert target.read_text() == "keep"

    @pytest.mark.asyncio
    async def test_list_files(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "b.txt").write_text("12345")
        listing = await ListFilesTool(tmp_path).execute()
        lines = listing.splitlines()
        assert lines[0].startswith("d sub")
        assert lines[1].startswith("f b.txt")

    @pytest.mark.asyncio
    async def test_execute_command(self, tmp_path):
        tool = ExecuteCommandTool(tmp_path)
        assert (await tool.execute("echo hello")).strip() == "hello"
        out = await tool.execute("exit 3")
        assert "[exit code: 3]" in out

    @pytest.mark.asyncio
    async def test_dangerous_command_blocked(self, tmp_path):
        reg = ToolRegistry([ExecuteCommandTool(tmp_path)])
        result = await reg.execute(ToolCall("execute_command", {"command": "rm -rf /"}))
        assert result.is_error
        assert "blocked" in result.output

    def test_html_to_text(self):
        html = "<html><style>x{}</style><h1>Title</h1><p>Body <b>bold</b></p><script>1</script></html>"
        assert html_to_text(html) == "Title\nBody bold"

    def test_default_tool_names(self, tmp_path):
        names = [t.name for t in default_tools(tmp_path)]
        assert names == ["execute_command", "read_file", "write_file", "list_files", "web_fetch"]
