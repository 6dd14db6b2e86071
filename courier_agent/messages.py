"""Data types shared by channels, the context manager and the tool-call loop."""

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

ROLES = ("system", "user", "assistant", "tool")


@dataclass(frozen=True)
class ChannelMessage:
    """An inbound message as produced by a channel adapter.

    ``reply_target`` is where the channel wants the answer delivered; it is
    usually the sender but may be a group or chat id.
    """

    sender: str
    content: str
    channel: str
    reply_target: str = ""
    thread: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    @property
    def conversation_key(self) -> "ConversationKey":
        return ConversationKey(channel=self.channel, sender=self.sender, thread=self.thread)

    @property
    def sender_scope(self) -> tuple[str, str]:
        return (self.channel, self.sender)


@dataclass(frozen=True)
class SendMessage:
    content: str
    recipient: str
    thread: str | None = None


def _escape_key_part(part: str) -> str:
    return part.replace("\\", "\\\\").replace(":", "\\:")


def _split_key(value: str) -> list[str]:
    """Split on unescaped ``:``, undoing ``\\:`` and ``\\\\`` escapes."""
    parts: list[str] = []
    buf: list[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            buf.append(value[i + 1])
            i += 2
            continue
        if ch == ":":
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    parts.append("".join(buf))
    return parts


@dataclass(frozen=True)
class ConversationKey:
    """Identifies one history stream.

    The string form is ``channel:sender`` or ``channel:thread:sender``.
    Colons and backslashes inside a part are backslash-escaped, so ids such
    as ``@bob:matrix.org`` survive ``parse(str(key))``.
    """

    channel: str
    sender: str
    thread: str | None = None

    def __str__(self) -> str:
        channel, sender = _escape_key_part(self.channel), _escape_key_part(self.sender)
        if self.thread:
            return f"{channel}:{_escape_key_part(self.thread)}:{sender}"
        return f"{channel}:{sender}"

    @classmethod
    def parse(cls, value: str) -> "ConversationKey":
        parts = _split_key(value)
        if any(not p for p in (parts[0], parts[-1])):
            raise ValueError(f"invalid conversation key: {value!r}")
        if len(parts) == 2:
            return cls(channel=parts[0], sender=parts[1])
        if len(parts) == 3:
            return cls(channel=parts[0], thread=parts[1], sender=parts[2])
        raise ValueError(f"invalid conversation key: {value!r}")


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    output: str
    is_error: bool = False


@dataclass(frozen=True)
class ChatMessage:
    """One entry of a conversation.

    ``tool_calls`` and ``tool_call_id`` are only set on messages that live
    inside a single tool-call loop run; stored history never carries them.
    """

    role: str
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown role: {self.role!r}")

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: tuple[ToolCall, ...] = ()) -> "ChatMessage":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, result: ToolResult) -> "ChatMessage":
        return cls(role="tool", content=result.output, tool_call_id=result.call_id, name=result.name)

    def with_content(self, content: str) -> "ChatMessage":
        return replace(self, content=content)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        return data
