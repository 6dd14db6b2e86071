"""Tests for runtime assembly."""

import asyncio

import pytest

from courier_agent.config import RuntimeConfig
from courier_agent.memory import ChromaMemoryStore
from courier_agent.messages import ToolCall
from courier_agent.providers import build_provider
from courier_agent.providers.base import ProviderResponse
from courier_agent.providers.subprocess_provider import SubprocessProvider
from courier_agent.runtime import AgentRuntime

from conftest import FakeCollection, StubProvider, make_message


def _config(tmp_path, **overrides) -> RuntimeConfig:
    config = RuntimeConfig.load(env={})
    config.workspace = str(tmp_path / "workspace")
    config.update(overrides)
    return config


class TestBuildProvider:
    def test_subprocess_without_daemon_uses_oneshot(self, tmp_path):
        provider = build_provider(_config(tmp_path, provider="subprocess"))
        assert isinstance(provider, SubprocessProvider)
        assert provider.mode == "oneshot"

    def test_subprocess_daemon(self, tmp_path):
        config = _config(tmp_path, provider="subprocess", daemon_command=["kiro-cli", "daemon"], subprocess_agent="ops")
        provider = build_provider(config)
        assert provider.mode == "daemon"
        assert provider._oneshot_argv() == ["kiro-cli", "chat", "--no-interactive", "--agent", "ops"]

    def test_unknown_provider(self, tmp_path):
        with pytest.raises(ValueError):
            build_provider(_config(tmp_path, provider="carrier-pigeon"))


class TestAgentRuntime:
    def test_wiring_from_config(self, tmp_path):
        runtime = AgentRuntime(_config(tmp_path, max_tool_iterations=3, system_prompt="short"), provider=StubProvider())
        assert runtime.loop.max_iterations == 3
        assert runtime.loop.system_prompt == "short"
        assert "read_file" in runtime.tools.names()
        assert (tmp_path / "workspace").is_dir()
        assert runtime.memory is None
        assert "remember" not in runtime.tools.names()

    def test_memory_enabled_by_path(self, tmp_path):
        runtime = AgentRuntime(_config(tmp_path, memory_path=str(tmp_path / "mem")), provider=StubProvider())
        assert isinstance(runtime.memory, ChromaMemoryStore)
        assert runtime.dispatcher.memory is runtime.memory
        assert "remember" in runtime.tools.names()

    @pytest.mark.asyncio
    async def test_start_process_stop(self, tmp_path, stub_channel):
        runtime = AgentRuntime(_config(tmp_path), provider=StubProvider())
        runtime.add_channel(stub_channel)
        await runtime.start()
        try:
            stub_channel.push(make_message("hello runtime"))
            for _ in range(200):
                if stub_channel.sent:
                    break
                await asyncio.sleep(0.01)
            assert [m.content for m in stub_channel.sent] == ["echo: hello runtime"]

            health = await runtime.health()
            assert health["status"] == "ok"
            assert health["provider"] == "stub"
            assert health["channels"] == {"stub": True}

            stub_channel.healthy = False
            assert (await runtime.health())["status"] == "degraded"
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_remembered_fact_recalled_in_later_conversation(self, tmp_path, stub_channel):
        collection = FakeCollection()
        memory = ChromaMemoryStore(tmp_path / "mem", collection=collection)
        provider = StubProvider([
            ProviderResponse(tool_calls=[ToolCall("remember", {"content": "prefers green tea"})]),
            ProviderResponse(content="Noted."),
        ])
        runtime = AgentRuntime(_config(tmp_path), provider=provider, memory=memory)
        runtime.add_channel(stub_channel)
        try:
            runtime.dispatcher.submit(make_message("remember that I like green tea", thread="t1"))
            await runtime.dispatcher.join()
            (stored,) = collection._docs.values()
            assert stored["document"] == "prefers green tea"
            assert stored["metadata"]["sender"] == "alice"

            runtime.dispatcher.submit(make_message("what should I drink?", thread="t2"))
            await runtime.dispatcher.join()
        finally:
            await runtime.stop()

        assert [m.content for m in stub_channel.sent] == ["Noted.", "echo: what should I drink?"]
        first_user = provider.calls[-1][-1].content
        assert first_user.startswith("[Memory context]\n- prefers green tea")

    @pytest.mark.asyncio
    async def test_stop_waits_for_detached_provider_call(self, tmp_path, stub_channel):
        events = []

        class OrderedProvider(StubProvider):
            async def chat(self, history, tool_specs=(), system_prompt=None):
                response = await super().chat(history, tool_specs, system_prompt)
                events.append("finished")
                return response

            async def close(self):
                events.append("closed")

        provider = OrderedProvider()
        provider.gates["slow"] = gate = asyncio.Event()
        runtime = AgentRuntime(_config(tmp_path), provider=provider)
        runtime.add_channel(stub_channel)
        runtime.dispatcher.submit(make_message("slow"))
        while not provider.calls:
            await asyncio.sleep(0.01)

        stopping = asyncio.create_task(runtime.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()
        gate.set()
        await stopping

        assert events == ["finished", "closed"]
        assert stub_channel.sent == []
