"""Built-in tools: shell, workspace files, web fetch, long-term memory."""

import asyncio
import logging
import os
import re
from html.parser import HTMLParser
from pathlib import Path

import aiohttp

from ..errors import ToolExecutionFailure
from ..memory import MemoryStore
from ..scope import current_conversation
from .base import Tool

logger = logging.getLogger("courier_agent.tools.builtin")

COMMAND_TIMEOUT = 120
MAX_READ_CHARS = 50_000
MAX_LIST_ENTRIES = 200
FETCH_TIMEOUT = 20

# Dangerous command patterns
_DENY_PATTERNS = [
    r"\brm\s+(-[a-zA-Z]*f[a-zA-Z]*\s+)?/(\s|$)",
    r"\bmkfs\b", r"\bdd\s+.*of=/dev/", r":\(\)\s*\{\s*:\|:&\s*\};:",
    r"\bshutdown\b", r"\breboot\b", r"\bhalt\b",
    r"\bchmod\s+(-R\s+)?777\s+/(\s|$)",
    r">\s*/dev/sd[a-z]", r"\bwget\s.*\|\s*sh\b", r"\bcurl\s.*\|\s*sh\b",
]


class _WorkspaceTool(Tool):
    def __init__(self, workspace: str | Path, protected: set[str] | None = None):
        self.workspace = Path(workspace)
        self.protected = {str(Path(p).resolve()) for p in protected or ()}

    def _resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = self.workspace / p
        return p

    def _is_protected(self, p: Path) -> bool:
        return str(p.resolve()) in self.protected


class ExecuteCommandTool(_WorkspaceTool):
    name = "execute_command"
    description = (
        "Execute a shell command in the workspace directory. Returns stdout + stderr "
        "and the exit code when it is nonzero."
    )
    parameters = {
        "type": "object",
        "properties": {"command": {"type": "string", "description": "Shell command to run"}},
        "required": ["command"],
    }

    async def execute(self, command: str) -> str:
        for pattern in _DENY_PATTERNS:
            if re.search(pattern, command):
                raise ToolExecutionFailure(self.name, "blocked: dangerous command pattern detected")
        kill_match = re.findall(r"\bkill\s+(?:-\d+\s+)?(\d+)", command)
        if any(pid in (str(os.getpid()), str(os.getppid()), "1") for pid in kill_match):
            raise ToolExecutionFailure(self.name, "blocked: cannot kill the agent runtime process")

        self.workspace.mkdir(parents=True, exist_ok=True)
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.workspace),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ToolExecutionFailure(self.name, f"command timed out after {COMMAND_TIMEOUT}s")

        output = stdout.decode(errors="replace") + stderr.decode(errors="replace")
        if proc.returncode != 0:
            output += f"\n[exit code: {proc.returncode}]"
        return output


class ReadFileTool(_WorkspaceTool):
    name = "read_file"
    description = "Read a text file. Path can be absolute or relative to the workspace."
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }

    async def execute(self, path: str) -> str:
        p = self._resolve(path)
        if not p.is_file():
            raise ToolExecutionFailure(self.name, f"file not found: {path}")
        content = await asyncio.to_thread(p.read_text, errors="replace")
        if len(content) > MAX_READ_CHARS:
            return content[:MAX_READ_CHARS] + "\n... [truncated]"
        return content


class WriteFileTool(_WorkspaceTool):
    name = "write_file"
    description = "Write content to a file, creating parent directories. Relative paths land in the workspace."
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str) -> str:
        p = self._resolve(path)
        if self._is_protected(p):
            raise ToolExecutionFailure(self.name, f"blocked: {path} is a protected file")
        p.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(p.write_text, content)
        return f"[wrote {len(content)} bytes to {path}]"


class ListFilesTool(_WorkspaceTool):
    name = "list_files"
    description = "List files and directories at a path. Defaults to the workspace root."
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string", "default": "."}},
    }

    async def execute(self, path: str = ".") -> str:
        p = self._resolve(path)
        if not p.exists():
            raise ToolExecutionFailure(self.name, f"path not found: {path}")
        entries = sorted(p.iterdir(), key=lambda x: (not x.is_dir(), x.name))
        lines = []
        for e in entries[:MAX_LIST_ENTRIES]:
            prefix = "d " if e.is_dir() else "f "
            size = e.stat().st_size if e.is_file() else 0
            lines.append(f"{prefix}{e.name:40s} {size:>10d}")
        return "\n".join(lines) or "[empty directory]"


class _HTMLTextExtractor(HTMLParser):
    def __init__(self):
        super().__init__()
        self._text = []
        self._skip = False
        self._skip_tags = {"script", "style", "noscript", "svg", "path"}

    def handle_starttag(self, tag, attrs):
        if tag in self._skip_tags:
            self._skip = True
        if tag in ("br", "p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr"):
            self._text.append("\n")

    def handle_endtag(self, tag):
        if tag in self._skip_tags:
            self._skip = False

    def handle_data(self, data):
        if not self._skip:
            self._text.append(data)

    def get_text(self) -> str:
        text = "".join(self._text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


def html_to_text(html: str) -> str:
    parser = _HTMLTextExtractor()
    parser.feed(html)
    return parser.get_text()


class WebFetchTool(Tool):
    name = "web_fetch"
    description = "Fetch a URL and return its text content (HTML is converted to plain text)."
    parameters = {
        "type": "object",
        "properties": {"url": {"type": "string"}},
        "required": ["url"],
    }

    async def execute(self, url: str) -> str:
        if not url.startswith(("http://", "https://")):
            raise ToolExecutionFailure(self.name, "only http(s) URLs are supported")
        timeout = aiohttp.ClientTimeout(total=FETCH_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers={"User-Agent": "courier-agent"}) as resp:
                body = await resp.text(errors="replace")
                if resp.status >= 400:
                    raise ToolExecutionFailure(self.name, f"HTTP {resp.status}")
                if "html" in resp.headers.get("Content-Type", ""):
                    body = html_to_text(body)
        if len(body) > MAX_READ_CHARS:
            body = body[:MAX_READ_CHARS] + "\n... [truncated]"
        return body


class RememberTool(Tool):
    """Stores a fact in long-term memory for the sender of the running conversation."""

    name = "remember"
    description = (
        "Save information to long-term memory. It is recalled at the start of later "
        "conversations with the same user. Use it for preferences, key facts and "
        "anything the user asks you to remember."
    )
    parameters = {
        "type": "object",
        "properties": {"content": {"type": "string", "description": "The fact to remember"}},
        "required": ["content"],
    }

    def __init__(self, memory: MemoryStore):
        self.memory = memory

    async def execute(self, content: str) -> str:
        content = content.strip()
        if not content:
            raise ToolExecutionFailure(self.name, "nothing to remember")
        key = current_conversation.get()
        if key is None:
            raise ToolExecutionFailure(self.name, "no active conversation")
        mem_id = await self.memory.remember(key, content)
        if mem_id:
            return f"[memory stored: {mem_id}] {content[:80]}"
        return f"[memory stored] {content[:80]}"


def default_tools(workspace: str | Path, protected: set[str] | None = None) -> list[Tool]:
    return [
        ExecuteCommandTool(workspace, protected),
        ReadFileTool(workspace, protected),
        WriteFileTool(workspace, protected),
        ListFilesTool(workspace, protected),
        WebFetchTool(),
    ]
