"""Provider adapters and the factory that picks one from config."""

import logging

from ..config import RuntimeConfig
from .base import (
    ErrorClassifier,
    KeywordClassifier,
    Provider,
    ProviderCapabilities,
    ProviderResponse,
)
from .subprocess_provider import DaemonSession, SubprocessProvider

logger = logging.getLogger("courier_agent.providers")


def build_provider(config: RuntimeConfig) -> Provider:
    """Construct the provider named by ``config.provider``."""
    if config.provider == "openai":
        from .openai_provider import OpenAIProvider

        return OpenAIProvider(model=config.model, api_key=config.api_key, api_base=config.api_base)
    if config.provider == "subprocess":
        mode = config.subprocess_mode
        if mode == "daemon" and not config.daemon_command:
            logger.warning("subprocess_mode is daemon but no daemon_command is set, using one-shot mode")
            mode = "oneshot"
        return SubprocessProvider(
            oneshot_command=config.oneshot_command,
            daemon_command=config.daemon_command or None,
            mode=mode,
            stream=config.daemon_stream,
            read_timeout=config.daemon_read_timeout,
            oneshot_timeout=config.oneshot_timeout,
            agent=config.subprocess_agent,
        )
    raise ValueError(f"unknown provider: {config.provider!r}")


__all__ = [
    "DaemonSession",
    "ErrorClassifier",
    "KeywordClassifier",
    "Provider",
    "ProviderCapabilities",
    "ProviderResponse",
    "SubprocessProvider",
    "build_provider",
]
