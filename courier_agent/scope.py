"""Per-run ambient state: the cancellation token and the active conversation.

Both are ContextVars so that work the loop detaches into its own tasks
(provider calls, tool executions) still sees the run it belongs to.
"""

import asyncio
from contextvars import ContextVar

from .errors import Cancelled
from .messages import ConversationKey


class CancellationToken:
    """Cooperative cancellation flag checked at loop boundaries."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()

    async def wait(self) -> None:
        await self._event.wait()


current_token: ContextVar[CancellationToken | None] = ContextVar("courier_current_token", default=None)
current_conversation: ContextVar[ConversationKey | None] = ContextVar(
    "courier_current_conversation", default=None
)
