"""Wires config, provider, tools, context, loop, dispatcher and channels together."""

import asyncio
import logging
from pathlib import Path

from .channels.base import Channel
from .config import RuntimeConfig
from .context import ContextManager
from .dispatcher import Dispatcher
from .loop import ToolCallLoop
from .memory import ChromaMemoryStore, MemoryStore, OpenAIEmbeddingFunction
from .providers import build_provider
from .providers.base import Provider
from .tools.base import ToolRegistry
from .tools.builtin import RememberTool, default_tools

logger = logging.getLogger("courier_agent.runtime")

DEFAULT_EMBEDDING_BASE = "https://api.openai.com/v1"
# How long stop() waits for detached provider calls and tools.
DRAIN_TIMEOUT = 30.0


def build_memory(config: RuntimeConfig) -> MemoryStore:
    embedding_function = None
    if config.api_key:
        embedding_function = OpenAIEmbeddingFunction(
            config.api_base or DEFAULT_EMBEDDING_BASE, config.api_key, config.embedding_model
        )
    else:
        logger.info("No api_key configured, memory uses ChromaDB's default embedding function")
    return ChromaMemoryStore(config.memory_path, embedding_function=embedding_function)


class AgentRuntime:
    def __init__(
        self,
        config: RuntimeConfig,
        provider: Provider | None = None,
        tools: ToolRegistry | None = None,
        memory: MemoryStore | None = None,
    ):
        self.config = config
        self.provider = provider or build_provider(config)
        if memory is None and config.memory_path:
            memory = build_memory(config)
        self.memory = memory
        if tools is None:
            Path(config.workspace).mkdir(parents=True, exist_ok=True)
            tools = ToolRegistry(default_tools(config.workspace))
        if memory is not None and tools.get(RememberTool.name) is None:
            tools.register(RememberTool(memory))
        self.tools = tools
        self.context = ContextManager(
            max_history=config.max_history,
            compact_keep=config.compact_keep,
            compact_max_chars=config.compact_max_chars,
        )
        self.loop = ToolCallLoop(
            self.provider,
            self.tools,
            max_iterations=config.max_tool_iterations,
            system_prompt=config.system_prompt,
        )
        self.dispatcher = Dispatcher(
            self.context,
            self.loop,
            memory=self.memory,
            per_channel_limit=config.per_channel_limit,
            global_min=config.global_min_inflight,
            global_max=config.global_max_inflight,
            run_timeout=config.run_timeout,
            memory_max_entries=config.memory_max_entries,
            memory_entry_chars=config.memory_entry_chars,
            memory_total_chars=config.memory_total_chars,
        )
        self.channels: list[Channel] = []

    def add_channel(self, channel: Channel) -> None:
        self.channels.append(channel)
        self.dispatcher.add_channel(channel)

    async def start(self) -> None:
        for channel in self.channels:
            await channel.start()
        await self.dispatcher.start()
        logger.info(
            "Runtime started  provider=%s  tools=%d  channels=%s",
            self.provider.name,
            len(self.tools),
            ",".join(c.name for c in self.channels) or "none",
        )

    async def stop(self) -> None:
        await self.dispatcher.stop()
        for channel in self.channels:
            try:
                await channel.stop()
            except Exception:
                logger.exception("Error stopping channel %s", channel.name)
        try:
            await asyncio.wait_for(self.loop.drain(), DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Detached provider work still running after %gs, closing anyway", DRAIN_TIMEOUT)
        await self.provider.close()
        logger.info("Runtime stopped")

    async def health(self) -> dict:
        channels = {}
        for channel in self.channels:
            try:
                channels[channel.name] = await channel.health_check()
            except Exception:
                channels[channel.name] = False
        return {
            "status": "ok" if all(channels.values()) else "degraded",
            "provider": self.provider.name,
            "channels": channels,
            "dispatch": self.dispatcher.stats(),
        }
