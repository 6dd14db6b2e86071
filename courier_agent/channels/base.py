"""Channel adapter interface. Implement this to connect a chat platform."""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from ..messages import ChannelMessage, SendMessage


class Channel(ABC):
    """One chat platform.

    The runtime only reads and writes the fields of ``ChannelMessage`` and
    ``SendMessage``; platform payload parsing stays inside the adapter.
    """

    name: str = "channel"

    @abstractmethod
    def listen(self) -> AsyncIterator[ChannelMessage]:
        """Yield inbound messages until the channel is stopped."""
        ...

    @abstractmethod
    async def send(self, message: SendMessage) -> bool:
        """Deliver a reply. Returns False if delivery failed."""
        ...

    async def health_check(self) -> bool:
        return True

    async def start(self) -> None:
        """Open connections. Called once before ``listen``."""
        pass

    async def stop(self) -> None:
        """Close connections. Called once at shutdown."""
        pass
