"""The tool-call loop: provider call → tool execution → provider call … → final text.

States::

    Start → AwaitProviderResponse ─┬─ tool calls → ExecuteTools → AwaitProviderResponse
                                   └─ no tool calls → Done
    (any state) → Cancelled | Error

Provider calls and tool executions run as detached tasks that the loop
awaits through ``asyncio.shield``. If the run is cancelled or times out, the
work in flight finishes in the background and its result is dropped, so a
daemon provider is never interrupted halfway through a response.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Sequence, TypeVar

from .attachments import encode_image_markers, has_attachments
from .context import normalize
from .errors import (
    ContextOverflow,
    CourierError,
    ErrorKind,
    IterationCapReached,
    ProviderError,
    ProviderTransportFailure,
)
from .messages import ChatMessage, ToolResult
from .providers.base import Provider, ProviderResponse
from .scope import CancellationToken, current_token
from .tools.base import ToolRegistry, ToolSpec

logger = logging.getLogger("courier_agent.loop")

T = TypeVar("T")


@dataclass
class LoopResult:
    content: str
    iterations: int
    tool_results: list[ToolResult] = field(default_factory=list)


class ToolCallLoop:
    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry | None = None,
        max_iterations: int = 10,
        system_prompt: str | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.provider = provider
        self.registry = registry or ToolRegistry()
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt
        self._background: set[asyncio.Task] = set()

    # --- Content filtering ---

    def _filter(self, msg: ChatMessage) -> ChatMessage:
        caps = self.provider.capabilities
        if caps.raw_image_markers or not caps.vision:
            return msg
        if msg.role == "user" or (msg.role == "tool" and caps.encode_tool_images):
            if has_attachments(msg.content):
                return msg.with_content(encode_image_markers(msg.content))
        return msg

    def prepare_history(self, history: Sequence[ChatMessage]) -> list[ChatMessage]:
        """Normalize history and encode images the provider needs inline."""
        return [self._filter(m) for m in normalize(history)]

    # --- Detached work ---

    def _detach(self, coro: Awaitable[T]) -> "asyncio.Future[T]":
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Detached task finished with %r", task.exception())

    async def _call_provider(
        self, working: list[ChatMessage], specs: list[ToolSpec]
    ) -> ProviderResponse:
        try:
            return await asyncio.shield(
                self._detach(self.provider.chat(list(working), specs, self.system_prompt))
            )
        except ProviderError as exc:
            if exc.kind == ErrorKind.OVERFLOW:
                raise ContextOverflow(str(exc)) from exc
            if exc.kind == ErrorKind.TRANSPORT and not isinstance(exc, ProviderTransportFailure):
                raise ProviderTransportFailure(str(exc)) from exc
            raise
        except CourierError:
            raise
        except Exception as exc:
            error = self.provider.error(exc)
            if error.kind == ErrorKind.OVERFLOW:
                raise ContextOverflow(str(exc)) from exc
            raise error from exc

    # --- Main loop ---

    async def run(
        self, history: Sequence[ChatMessage], token: CancellationToken | None = None
    ) -> LoopResult:
        token = token or CancellationToken()
        bound = current_token.set(token)
        try:
            return await self._run(history, token)
        finally:
            current_token.reset(bound)

    async def _run(self, history: Sequence[ChatMessage], token: CancellationToken) -> LoopResult:
        working = self.prepare_history(history)
        specs = self.registry.specs()
        results: list[ToolResult] = []

        for iteration in range(1, self.max_iterations + 1):
            token.raise_if_cancelled()
            response = await self._call_provider(working, specs)
            token.raise_if_cancelled()

            if not response.tool_calls:
                logger.debug("Loop finished after %d provider call(s)", iteration)
                return LoopResult(response.content, iteration, results)

            logger.info(
                "Provider requested %d tool call(s): %s",
                len(response.tool_calls),
                ", ".join(c.name for c in response.tool_calls),
            )
            working.append(ChatMessage.assistant(response.content, tuple(response.tool_calls)))
            for call in response.tool_calls:
                token.raise_if_cancelled()
                result = await asyncio.shield(self._detach(self.registry.execute(call)))
                results.append(result)
                working.append(self._filter(ChatMessage.tool(result)))

        logger.warning("Tool-call loop hit the iteration cap (%d)", self.max_iterations)
        raise IterationCapReached(self.max_iterations)

    async def drain(self) -> None:
        """Wait for detached provider calls and tools to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
