"""Admission control for inbound messages from every channel.

Rules:

* One live ticket per sender (``(channel, sender)``). A newer message
  supersedes the live ticket: the old one is cancelled and, if it was
  running, hands its concurrency slot straight to the new ticket.
* At most ``per_channel_limit`` runs per channel, and at most
  ``global_cap`` runs overall, where the global cap scales with the number of
  channels that currently have work (clamped to ``[global_min, global_max]``).
* Tickets over capacity wait in a FIFO queue per channel; channels are
  drained round-robin. Superseded tickets are dropped when they reach the
  head of the queue.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from .channels.base import Channel
from .context import ContextManager, MemoryEntry, inject_memory
from .errors import Cancelled, ContextOverflow, CourierError, RunTimeout, user_message
from .loop import CancellationToken, LoopResult, ToolCallLoop
from .memory import MemoryStore
from .messages import ChannelMessage, ChatMessage, ConversationKey, SendMessage
from .scope import current_conversation

logger = logging.getLogger("courier_agent.dispatcher")

QUEUED = "queued"
RUNNING = "running"
DONE = "done"


@dataclass(eq=False)
class DispatchTicket:
    message: ChannelMessage
    token: CancellationToken = field(default_factory=CancellationToken)
    state: str = QUEUED
    owns_slot: bool = False
    task: asyncio.Task | None = None

    @property
    def key(self) -> ConversationKey:
        return self.message.conversation_key

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        self.token.cancel()


class Dispatcher:
    def __init__(
        self,
        context: ContextManager,
        loop: ToolCallLoop,
        channels: Iterable[Channel] = (),
        memory: MemoryStore | None = None,
        per_channel_limit: int = 4,
        global_min: int = 8,
        global_max: int = 64,
        run_timeout: float = 300.0,
        memory_max_entries: int = 4,
        memory_entry_chars: int = 800,
        memory_total_chars: int = 4000,
    ):
        self.context = context
        self.loop = loop
        self.memory = memory
        self.per_channel_limit = per_channel_limit
        self.global_min = global_min
        self.global_max = max(global_min, global_max)
        self.run_timeout = run_timeout
        self.memory_limits = (memory_max_entries, memory_entry_chars, memory_total_chars)

        self._channels: dict[str, Channel] = {}
        self._live: dict[tuple[str, str], DispatchTicket] = {}
        self._queues: dict[str, deque[DispatchTicket]] = {}
        self._active: dict[str, int] = {}
        self._order: deque[str] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[asyncio.Task] = []
        for channel in channels:
            self.add_channel(channel)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def add_channel(self, channel: Channel) -> None:
        self._channels[channel.name] = channel
        self._ensure_lane(channel.name)

    def _ensure_lane(self, name: str) -> None:
        if name not in self._queues:
            self._queues[name] = deque()
            self._active[name] = 0
            self._order.append(name)

    async def start(self) -> None:
        """Start one listener per channel feeding ``submit``."""
        for channel in self._channels.values():
            task = asyncio.create_task(self._listen(channel), name=f"listen-{channel.name}")
            self._listeners.append(task)

    async def _listen(self, channel: Channel) -> None:
        try:
            async for message in channel.listen():
                self.submit(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Listener for channel %s crashed", channel.name)

    async def stop(self) -> None:
        for task in self._listeners:
            task.cancel()
        for ticket in list(self._live.values()):
            ticket.cancel()
        for queue in self._queues.values():
            queue.clear()
        tasks = self._listeners + list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()

    async def join(self) -> None:
        """Wait until every started and queued ticket has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    @property
    def global_cap(self) -> int:
        busy = sum(1 for name in self._order if self._active[name] or self._queues[name])
        wanted = self.per_channel_limit * max(busy, 1)
        return max(self.global_min, min(self.global_max, wanted))

    def _total_active(self) -> int:
        return sum(self._active.values())

    def stats(self) -> dict:
        return {
            "global_cap": self.global_cap,
            "active": dict(self._active),
            "queued": {name: len(q) for name, q in self._queues.items()},
        }

    def submit(self, message: ChannelMessage) -> DispatchTicket:
        """Admit an inbound message, superseding the sender's live ticket."""
        self._ensure_lane(message.channel)
        ticket = DispatchTicket(message)
        scope = message.sender_scope
        previous = self._live.get(scope)
        self._live[scope] = ticket

        if previous is not None and previous.state != DONE:
            previous.cancel()
            logger.info(
                "Message %s from %s supersedes %s (%s)",
                message.id, message.sender, previous.message.id, previous.state,
            )
            if previous.state == RUNNING and previous.owns_slot:
                previous.owns_slot = False
                ticket.owns_slot = True
                self._start(ticket)
                return ticket

        self._queues[message.channel].append(ticket)
        self._pump()
        return ticket

    def _pump(self) -> None:
        progressed = True
        while progressed:
            progressed = False
            for _ in range(len(self._order)):
                if self._total_active() >= self.global_cap:
                    return
                name = self._order[0]
                self._order.rotate(-1)
                queue = self._queues[name]
                while queue and queue[0].cancelled:
                    dropped = queue.popleft()
                    dropped.state = DONE
                    logger.debug("Dropped superseded queued message %s", dropped.message.id)
                if not queue or self._active[name] >= self.per_channel_limit:
                    continue
                ticket = queue.popleft()
                self._active[name] += 1
                ticket.owns_slot = True
                self._start(ticket)
                progressed = True

    def _start(self, ticket: DispatchTicket) -> None:
        ticket.state = RUNNING
        task = asyncio.create_task(self._run(ticket), name=f"ticket-{ticket.message.id}")
        ticket.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _release(self, ticket: DispatchTicket) -> None:
        ticket.state = DONE
        scope = ticket.message.sender_scope
        if self._live.get(scope) is ticket:
            del self._live[scope]
        if ticket.owns_slot:
            ticket.owns_slot = False
            self._active[ticket.message.channel] -= 1
        self._pump()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _run(self, ticket: DispatchTicket) -> None:
        try:
            await asyncio.wait_for(self._process(ticket), timeout=self.run_timeout)
        except asyncio.TimeoutError:
            logger.warning("Message %s timed out after %gs", ticket.message.id, self.run_timeout)
            await self._fail(ticket, RunTimeout(self.run_timeout))
        except Cancelled:
            logger.info("Discarded result for superseded message %s", ticket.message.id)
        except CourierError as exc:
            logger.warning("Message %s failed: %s", ticket.message.id, exc)
            await self._fail(ticket, exc)
        except Exception as exc:
            logger.exception("Unexpected error processing message %s", ticket.message.id)
            await self._fail(ticket, exc)
        finally:
            self._release(ticket)

    async def _process(self, ticket: DispatchTicket) -> None:
        message = ticket.message
        key = ticket.key
        current_conversation.set(key)
        first_turn = await self.context.is_empty(key)
        await self.context.append(key, ChatMessage.user(message.content))
        recall = await self._recall(key, message) if first_turn else []

        try:
            result = await self._run_loop(ticket, recall)
        except ContextOverflow:
            notice = await self.context.compact(key, guard=lambda: not ticket.cancelled)
            if notice is None:
                raise Cancelled()
            logger.info("Retrying message %s once on compacted history", message.id)
            try:
                result = await self._run_loop(ticket, ())
            except ContextOverflow:
                logger.warning("Message %s still overflows after compaction", message.id)
                await self._deliver(ticket, notice)
                return

        written = await self.context.append(
            key, ChatMessage.assistant(result.content), guard=lambda: not ticket.cancelled
        )
        if written is None:
            raise Cancelled()
        await self._deliver(ticket, result.content, committed=True)

    async def _run_loop(self, ticket: DispatchTicket, recall: Iterable[MemoryEntry]) -> LoopResult:
        history = await self.context.snapshot(ticket.key)
        recall = list(recall)
        if recall:
            history = inject_memory(history, recall, *self.memory_limits)
        return await self.loop.run(history, ticket.token)

    async def _recall(self, key: ConversationKey, message: ChannelMessage) -> list[MemoryEntry]:
        if self.memory is None:
            return []
        try:
            return list(await self.memory.recall(key, message.content))
        except Exception:
            logger.warning("Memory recall failed for %s", key, exc_info=True)
            return []

    async def _fail(self, ticket: DispatchTicket, exc: BaseException) -> None:
        text = user_message(exc)
        if text is None or ticket.cancelled:
            return
        await self._deliver(ticket, text)

    async def _deliver(self, ticket: DispatchTicket, content: str, committed: bool = False) -> None:
        # Once the reply is in history it is sent even if superseded meanwhile.
        if ticket.cancelled and not committed:
            return
        message = ticket.message
        if not content:
            logger.debug("Empty reply for message %s, nothing to send", message.id)
            return
        channel = self._channels.get(message.channel)
        if channel is None:
            logger.error("No channel named %s to deliver reply for %s", message.channel, message.id)
            return
        outgoing = SendMessage(
            content=content,
            recipient=message.reply_target or message.sender,
            thread=message.thread,
        )
        try:
            ok = await channel.send(outgoing)
        except Exception:
            logger.exception("Channel %s failed to send reply for %s", message.channel, message.id)
            return
        if not ok:
            logger.warning("Channel %s rejected reply for %s", message.channel, message.id)
