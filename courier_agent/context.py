"""Per-conversation history: bounded growth, normalization, recall injection, compaction."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from .errors import OVERFLOW_NOTICE
from .messages import ChatMessage, ConversationKey

logger = logging.getLogger("courier_agent.context")

MERGE_SEPARATOR = "\n\n"
TRUNCATION_SUFFIX = "…"


@dataclass(frozen=True)
class MemoryEntry:
    text: str
    score: float = 0.0


def truncate_content(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= len(TRUNCATION_SUFFIX):
        return text[:limit]
    return text[: limit - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def normalize(history: Iterable[ChatMessage]) -> list[ChatMessage]:
    """Return history with strict user/assistant alternation.

    Consecutive entries with the same role are merged. System entries are
    folded into a single leading message; tool entries belong to a single
    loop run and are dropped.
    """
    system_parts: list[str] = []
    turns: list[ChatMessage] = []
    for msg in history:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
            continue
        if msg.role == "tool":
            continue
        if turns and turns[-1].role == msg.role:
            prev = turns[-1]
            turns[-1] = ChatMessage(role=prev.role, content=_join(prev.content, msg.content))
        else:
            turns.append(ChatMessage(role=msg.role, content=msg.content))

    if system_parts:
        return [ChatMessage.system(MERGE_SEPARATOR.join(system_parts))] + turns
    return turns


def _join(a: str, b: str) -> str:
    if not a:
        return b
    if not b:
        return a
    return a + MERGE_SEPARATOR + b


def inject_memory(
    history: Sequence[ChatMessage],
    recall_entries: Iterable[MemoryEntry],
    max_entries: int = 4,
    entry_chars: int = 800,
    total_chars: int = 4000,
) -> list[ChatMessage]:
    """Prefix the latest user message with recalled memory.

    At most ``max_entries`` entries are used, each truncated to
    ``entry_chars``; entries stop being added once ``total_chars`` would be
    exceeded.
    """
    result = list(history)
    target = next((i for i in range(len(result) - 1, -1, -1) if result[i].role == "user"), None)
    if target is None:
        return result

    lines: list[str] = []
    used = 0
    for entry in recall_entries:
        if len(lines) >= max_entries:
            break
        text = truncate_content(entry.text.strip(), entry_chars)
        if not text:
            continue
        if used + len(text) > total_chars:
            remaining = total_chars - used
            if remaining <= 0:
                break
            text = truncate_content(text, remaining)
        lines.append(f"- {text}")
        used += len(text)

    if not lines:
        return result

    block = "[Memory context]\n" + "\n".join(lines)
    result[target] = result[target].with_content(block + MERGE_SEPARATOR + result[target].content)
    return result


class ContextManager:
    """Owns every ConversationHistory in the process.

    Structural changes to the map (creating a key's deque and lock) happen
    under ``_map_lock``; all reads and writes of a single history happen under
    that key's own lock, so different conversations never contend.
    """

    def __init__(self, max_history: int = 50, compact_keep: int = 12, compact_max_chars: int = 600):
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self.max_history = max_history
        self.compact_keep = max(1, compact_keep)
        self.compact_max_chars = compact_max_chars
        self._histories: dict[ConversationKey, deque[ChatMessage]] = {}
        self._locks: dict[ConversationKey, asyncio.Lock] = {}
        self._map_lock = asyncio.Lock()

    async def _entry(self, key: ConversationKey) -> tuple[deque, asyncio.Lock]:
        async with self._map_lock:
            if key not in self._histories:
                self._histories[key] = deque(maxlen=self.max_history)
                self._locks[key] = asyncio.Lock()
            return self._histories[key], self._locks[key]

    async def append(
        self, key: ConversationKey, message: ChatMessage, guard: Callable[[], bool] | None = None
    ) -> int | None:
        """Append a message, evicting the oldest past the cap. Returns the new length.

        ``guard`` is evaluated while holding the key lock; if it returns False
        nothing is written and None is returned.
        """
        if message.role == "tool" or message.tool_calls:
            raise ValueError("tool-call messages are not stored in conversation history")
        history, lock = await self._entry(key)
        async with lock:
            if guard is not None and not guard():
                return None
            if len(history) == history.maxlen:
                logger.debug("History %s at cap %d, evicting oldest entry", key, self.max_history)
            history.append(message)
            return len(history)

    async def snapshot(self, key: ConversationKey) -> tuple[ChatMessage, ...]:
        history, lock = await self._entry(key)
        async with lock:
            return tuple(history)

    async def is_empty(self, key: ConversationKey) -> bool:
        async with self._map_lock:
            return not self._histories.get(key)

    async def compact(self, key: ConversationKey, guard: Callable[[], bool] | None = None) -> str | None:
        """Shrink history after a context-window overflow and return the user notice.

        The result keeps the most recent ``compact_keep`` normalized entries,
        each truncated to ``compact_max_chars``, and is never empty.
        """
        history, lock = await self._entry(key)
        async with lock:
            if guard is not None and not guard():
                return None
            before = len(history)
            kept = [m for m in normalize(history) if m.role != "system"]
            kept = kept[-self.compact_keep:]
            kept = [m.with_content(truncate_content(m.content, self.compact_max_chars)) for m in kept]
            if not kept:
                kept = [ChatMessage.assistant(OVERFLOW_NOTICE)]
            history.clear()
            history.extend(kept)
            logger.info("Compacted history %s: %d -> %d messages", key, before, len(history))
        return OVERFLOW_NOTICE

    async def clear(self, key: ConversationKey) -> None:
        async with self._map_lock:
            self._histories.pop(key, None)
            self._locks.pop(key, None)

    def keys(self) -> list[ConversationKey]:
        return sorted(self._histories, key=str)
