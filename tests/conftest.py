"""Shared fixtures for courier-agent tests."""

import asyncio
from collections.abc import AsyncIterator

import pytest

from courier_agent.channels.base import Channel
from courier_agent.context import ContextManager
from courier_agent.messages import ChannelMessage, ChatMessage, SendMessage
from courier_agent.providers.base import Provider, ProviderCapabilities, ProviderResponse
from courier_agent.tools.base import Tool, ToolRegistry


def latest_user_text(history) -> str:
    """Last paragraph of the last user message (merged turns are split on blank lines)."""
    for msg in reversed(list(history)):
        if msg.role == "user":
            return msg.content.split("\n\n")[-1]
    return ""


class StubProvider(Provider):
    """Scripted provider.

    Pops ``responses`` in order (exceptions are raised); once exhausted it
    echoes the latest user text. ``gates`` maps a latest-user text to an
    event the call waits on before answering.
    """

    name = "stub"

    def __init__(self, responses=None, capabilities=None):
        self.capabilities = capabilities or ProviderCapabilities(native_tools=True)
        self.responses = list(responses or [])
        self.calls: list[list[ChatMessage]] = []
        self.system_prompts: list[str | None] = []
        self.tool_specs = []
        self.gates: dict[str, asyncio.Event] = {}
        self.finished: list[str] = []

    async def chat(self, history, tool_specs=(), system_prompt=None):
        self.calls.append(list(history))
        self.system_prompts.append(system_prompt)
        self.tool_specs = list(tool_specs)
        text = latest_user_text(history)
        gate = self.gates.get(text)
        if gate is not None:
            await gate.wait()
        self.finished.append(text)
        if self.responses:
            item = self.responses.pop(0)
        else:
            item = ProviderResponse(content=f"echo: {text}")
        if isinstance(item, BaseException):
            raise item
        return item


class StubChannel(Channel):
    """In-memory channel that records everything sent to it."""

    def __init__(self, name: str = "stub"):
        self.name = name
        self.sent: list[SendMessage] = []
        self.healthy = True
        self.reject_sends = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, message: ChannelMessage | None) -> None:
        self._queue.put_nowait(message)

    async def listen(self) -> AsyncIterator[ChannelMessage]:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            yield message

    async def send(self, message: SendMessage) -> bool:
        self.sent.append(message)
        return not self.reject_sends

    async def health_check(self) -> bool:
        return self.healthy


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, text: str) -> str:
        self.calls.append(text)
        return f"echoed {text}"


class BrokenTool(Tool):
    name = "broken"
    description = "Always fails"

    async def execute(self) -> str:
        raise RuntimeError("disk on fire")


class FakeCollection:
    """In-memory stand-in for chromadb.Collection.

    ``distances`` maps a document to the distance returned for it; anything
    unlisted is reported at ``default_distance``.
    """

    def __init__(self, default_distance: float = 0.5):
        self._docs: dict[str, dict] = {}
        self.distances: dict[str, float] = {}
        self.default_distance = default_distance
        self.queries: list[dict] = []

    def add(self, ids, documents, metadatas):
        for i, doc_id in enumerate(ids):
            self._docs[doc_id] = {"document": documents[i], "metadata": metadatas[i]}

    def update(self, ids, documents, metadatas):
        for i, doc_id in enumerate(ids):
            self._docs[doc_id] = {"document": documents[i], "metadata": metadatas[i]}

    def _matches(self, metadata, where):
        clauses = where.get("$and", [where])
        return all(metadata.get(k) == v for clause in clauses for k, v in clause.items())

    def query(self, query_texts, n_results=5, where=None, include=None):
        self.queries.append({"query_texts": query_texts, "n_results": n_results, "where": where})
        items = [(k, v) for k, v in self._docs.items() if not where or self._matches(v["metadata"], where)]
        items = items[:n_results]
        return {
            "ids": [[k for k, _ in items]],
            "documents": [[v["document"] for _, v in items]],
            "metadatas": [[v["metadata"] for _, v in items]],
            "distances": [[self.distances.get(v["document"], self.default_distance) for _, v in items]],
        }


def make_message(content: str, sender: str = "alice", channel: str = "stub", thread=None) -> ChannelMessage:
    return ChannelMessage(sender=sender, content=content, channel=channel, reply_target=sender, thread=thread)


@pytest.fixture
def stub_provider():
    return StubProvider()


@pytest.fixture
def stub_channel():
    return StubChannel()


@pytest.fixture
def echo_tool():
    return EchoTool()


@pytest.fixture
def registry(echo_tool):
    return ToolRegistry([echo_tool, BrokenTool()])


@pytest.fixture
def context():
    return ContextManager(max_history=50, compact_keep=12, compact_max_chars=600)
