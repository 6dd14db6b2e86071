"""Runtime configuration: defaults, optional config.json, COURIER_* env vars."""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger("courier_agent.config")

ENV_PREFIX = "COURIER_"


@dataclass
class RuntimeConfig:
    # Context manager
    max_history: int = 50
    compact_keep: int = 12
    compact_max_chars: int = 600

    # Memory injection (first turn only)
    memory_max_entries: int = 4
    memory_entry_chars: int = 800
    memory_total_chars: int = 4000

    # Long-term memory (ChromaDB). Empty path disables recall.
    memory_path: str = ""
    embedding_model: str = "text-embedding-3-small"

    # Tool-call loop
    max_tool_iterations: int = 10
    system_prompt: str = "You are a helpful assistant."
    workspace: str = field(default_factory=lambda: str(Path.home() / ".courier-agent" / "workspace"))

    # Dispatcher
    per_channel_limit: int = 4
    global_min_inflight: int = 8
    global_max_inflight: int = 64
    run_timeout: float = 300.0

    # Provider selection: "openai" or "subprocess"
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    api_base: str = ""

    # Subprocess provider
    subprocess_mode: str = "daemon"
    oneshot_command: list[str] = field(default_factory=lambda: ["kiro-cli", "chat", "--no-interactive"])
    daemon_command: list[str] = field(default_factory=list)
    subprocess_agent: str = ""
    daemon_stream: bool = True
    daemon_read_timeout: float = 120.0
    oneshot_timeout: float = 300.0

    @classmethod
    def load(cls, config_path: str | None = None, env: dict | None = None) -> "RuntimeConfig":
        """Build a config from defaults, then the JSON file, then the environment."""
        if env is None:
            load_dotenv()
            env = dict(os.environ)

        config = cls()
        if config_path:
            path = Path(config_path)
            if path.exists():
                config.update(json.loads(path.read_text()))
            else:
                logger.warning("Config file %s not found, using defaults", path)

        overrides = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is not None:
                overrides[f.name] = raw
        config.update(overrides)

        if not config.subprocess_agent:
            config.subprocess_agent = env.get("KIRO_AGENT", "")
        return config

    def update(self, values: dict) -> None:
        known = {f.name: f for f in fields(self)}
        for key, value in values.items():
            if key not in known:
                logger.warning("Ignoring unknown config key %r", key)
                continue
            setattr(self, key, _coerce(getattr(self, key), value))


def _coerce(current, value):
    if not isinstance(value, str):
        return value
    if isinstance(current, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        value = value.strip()
        if value.startswith("["):
            return json.loads(value)
        return value.split()
    return value
