"""courier-agent: multi-channel conversational agent runtime."""

from importlib.metadata import PackageNotFoundError, version as _pkg_version

from .channels.base import Channel
from .context import ContextManager
from .dispatcher import Dispatcher
from .loop import ToolCallLoop
from .messages import ChannelMessage, ChatMessage, ConversationKey, SendMessage
from .providers.base import Provider

try:
    __version__ = _pkg_version("courier-agent")
except PackageNotFoundError:
    __version__ = "dev"

__all__ = [
    "Channel",
    "ChannelMessage",
    "ChatMessage",
    "ContextManager",
    "ConversationKey",
    "Dispatcher",
    "Provider",
    "SendMessage",
    "ToolCallLoop",
    "__version__",
]
