"""Tests for conversation history: cap, normalization, memory injection, compaction."""

import asyncio
import random

import pytest

from courier_agent.context import (
    MERGE_SEPARATOR,
    ContextManager,
    MemoryEntry,
    inject_memory,
    normalize,
    truncate_content,
)
from courier_agent.errors import OVERFLOW_NOTICE
from courier_agent.messages import ChatMessage, ConversationKey, ToolCall, ToolResult

KEY = ConversationKey("stub", "alice")


def _random_history(rng: random.Random, length: int) -> list[ChatMessage]:
    history = []
    for i in range(length):
        role = rng.choice(["system", "user", "user", "assistant", "assistant", "tool"])
        if role == "tool":
            history.append(ChatMessage.tool(ToolResult(call_id=f"c{i}", name="t", output=f"out{i}")))
        else:
            history.append(ChatMessage(role=role, content=rng.choice(["", f"m{i}", "x" * rng.randint(1, 50)])))
    return history


class TestTruncate:
    def test_short_text_untouched(self):
        assert truncate_content("abc", 10) == "abc"

    def test_long_text_bounded(self):
        out = truncate_content("a" * 1000, 600)
        assert len(out) == 600
        assert out.endswith("…")


class TestNormalize:
    def test_merges_consecutive_same_role(self):
        out = normalize([ChatMessage.user("hi"), ChatMessage.user("there"), ChatMessage.assistant("yo")])
        assert out == [ChatMessage.user("hi" + MERGE_SEPARATOR + "there"), ChatMessage.assistant("yo")]

    def test_system_entries_fold_to_front(self):
        out = normalize([
            ChatMessage.user("a"),
            ChatMessage.system("rules"),
            ChatMessage.assistant("b"),
            ChatMessage.system("more"),
        ])
        assert out[0] == ChatMessage.system("rules" + MERGE_SEPARATOR + "more")
        assert [m.role for m in out[1:]] == ["user", "assistant"]

    def test_tool_entries_dropped(self):
        out = normalize([
            ChatMessage.user("a"),
            ChatMessage.tool(ToolResult("c", "t", "x")),
            ChatMessage.assistant("b"),
        ])
        assert [m.role for m in out] == ["user", "assistant"]

    def test_alternation_and_idempotence_on_random_histories(self):
        rng = random.Random(1234)
        for _ in range(200):
            history = _random_history(rng, rng.randint(0, 30))
            once = normalize(history)
            assert normalize(once) == once
            body = [m for m in once if m.role != "system"]
            assert all(m.role != "tool" for m in once)
            assert sum(1 for m in once if m.role == "system") <= 1
            if once and once[0].role == "system":
                assert all(m.role != "system" for m in once[1:])
            for prev, cur in zip(body, body[1:]):
                assert prev.role != cur.role


class TestInjectMemory:
    def test_prefixes_latest_user_message(self):
        history = [ChatMessage.user("old"), ChatMessage.assistant("ok"), ChatMessage.user("new")]
        out = inject_memory(history, [MemoryEntry("likes tea")])
        assert out[0].content == "old"
        assert out[2].content.startswith("[Memory context]\n- likes tea")
        assert out[2].content.endswith(MERGE_SEPARATOR + "new")
        assert history[2].content == "new"

    def test_limits(self):
        entries = [MemoryEntry("x" * 2000) for _ in range(10)]
        out = inject_memory([ChatMessage.user("q")], entries, max_entries=4, entry_chars=800, total_chars=2000)
        block = out[0].content.split(MERGE_SEPARATOR)[0]
        lines = [line for line in block.splitlines() if line.startswith("- ")]
        assert len(lines) <= 4
        assert all(len(line[2:]) <= 800 for line in lines)
        assert sum(len(line[2:]) for line in lines) <= 2000

    def test_no_entries_no_change(self):
        history = [ChatMessage.user("q")]
        assert inject_memory(history, []) == history

    def test_no_user_message_no_change(self):
        history = [ChatMessage.assistant("a")]
        assert inject_memory(history, [MemoryEntry("m")]) == history


class TestContextManager:
    @pytest.mark.asyncio
    async def test_cap_evicts_oldest(self):
        ctx = ContextManager(max_history=50)
        for i in range(60):
            await ctx.append(KEY, ChatMessage.user(f"m{i}"))
        snap = await ctx.snapshot(KEY)
        assert len(snap) == 50
        assert snap[0].content == "m10"
        assert snap[-1].content == "m59"

    @pytest.mark.asyncio
    async def test_rejects_tool_messages(self, context):
        with pytest.raises(ValueError):
            await context.append(KEY, ChatMessage.tool(ToolResult("c", "t", "x")))
        with pytest.raises(ValueError):
            await context.append(KEY, ChatMessage.assistant("", [ToolCall("t")]))

    @pytest.mark.asyncio
    async def test_guard_blocks_write(self, context):
        assert await context.append(KEY, ChatMessage.user("a"), guard=lambda: False) is None
        assert await context.is_empty(KEY)
        assert await context.append(KEY, ChatMessage.user("b"), guard=lambda: True) == 1

    @pytest.mark.asyncio
    async def test_snapshot_is_immutable_copy(self, context):
        await context.append(KEY, ChatMessage.user("a"))
        snap = await context.snapshot(KEY)
        await context.append(KEY, ChatMessage.assistant("b"))
        assert len(snap) == 1

    @pytest.mark.asyncio
    async def test_keys_are_isolated(self, context):
        other = ConversationKey("stub", "bob")
        threaded = ConversationKey("stub", "alice", "t1")
        await context.append(KEY, ChatMessage.user("a"))
        await context.append(other, ChatMessage.user("b"))
        await context.append(threaded, ChatMessage.user("c"))
        assert [m.content for m in await context.snapshot(KEY)] == ["a"]
        assert [m.content for m in await context.snapshot(threaded)] == ["c"]
        assert set(context.keys()) == {KEY, other, threaded}

    @pytest.mark.asyncio
    async def test_compact_bounds(self, context):
        for i in range(40):
            role = "user" if i % 2 == 0 else "assistant"
            await context.append(KEY, ChatMessage(role=role, content=f"{i}:" + "y" * 1500))
        notice = await context.compact(KEY)
        assert notice == OVERFLOW_NOTICE
        snap = await context.snapshot(KEY)
        assert 0 < len(snap) <= 12
        assert all(len(m.content) <= 600 for m in snap)
        assert snap[-1].content.startswith("39:")

    @pytest.mark.asyncio
    async def test_compact_never_empty(self, context):
        await context.append(KEY, ChatMessage.system("only system"))
        await context.compact(KEY)
        snap = await context.snapshot(KEY)
        assert snap == (ChatMessage.assistant(OVERFLOW_NOTICE),)

    @pytest.mark.asyncio
    async def test_compact_guard(self, context):
        await context.append(KEY, ChatMessage.user("a"))
        assert await context.compact(KEY, guard=lambda: False) is None
        assert len(await context.snapshot(KEY)) == 1

    @pytest.mark.asyncio
    async def test_clear(self, context):
        await context.append(KEY, ChatMessage.user("a"))
        await context.clear(KEY)
        assert await context.is_empty(KEY)

    @pytest.mark.asyncio
    async def test_concurrent_appends_all_land(self, context):
        await asyncio.gather(*(context.append(KEY, ChatMessage.user(str(i))) for i in range(30)))
        snap = await context.snapshot(KEY)
        assert sorted(int(m.content) for m in snap) == list(range(30))
