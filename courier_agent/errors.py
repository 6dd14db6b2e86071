"""Failure taxonomy for a single message run.

Every failure resolves to a retry, a sanitized user-visible message, or a
silent discard (``Cancelled``). Nothing here is fatal to the process.
"""

from enum import Enum


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    OVERFLOW = "overflow"
    FATAL = "fatal"


class CourierError(Exception):
    """Base class for runtime failures."""


class Cancelled(CourierError):
    """The run was superseded by a newer message from the same sender."""


class ContextOverflow(CourierError):
    """The assembled prompt does not fit the provider's context window."""


class ToolExecutionFailure(CourierError):
    """A tool raised or rejected its arguments. Recorded as a tool result."""

    def __init__(self, tool: str, detail: str):
        super().__init__(f"{tool}: {detail}")
        self.tool = tool
        self.detail = detail


class ProviderError(CourierError):
    """An error reported by a provider, classified by that provider."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.FATAL):
        super().__init__(message)
        self.kind = kind


class ProviderTransportFailure(ProviderError):
    def __init__(self, message: str):
        super().__init__(message, ErrorKind.TRANSPORT)


class IterationCapReached(CourierError):
    def __init__(self, iterations: int):
        super().__init__(f"no final answer after {iterations} provider calls")
        self.iterations = iterations


class RunTimeout(CourierError):
    def __init__(self, seconds: float):
        super().__init__(f"run exceeded {seconds:g}s")
        self.seconds = seconds


OVERFLOW_NOTICE = "context window exceeded, history compacted"

_USER_MESSAGES = {
    IterationCapReached: "I couldn't finish this within the tool-call limit. Try breaking the request into smaller steps.",
    RunTimeout: "This request took too long and was stopped. Please try again.",
    ProviderTransportFailure: "The language model is unreachable right now. Please try again in a moment.",
    ContextOverflow: OVERFLOW_NOTICE,
}

GENERIC_ERROR = "Something went wrong while generating a reply. Please try again."


def user_message(exc: BaseException) -> str | None:
    """Map a failure to the text shown to the user.

    Returns ``None`` for ``Cancelled``: superseded runs stay silent. Exception
    text is never forwarded since it may carry paths or credentials.
    """
    if isinstance(exc, Cancelled):
        return None
    if isinstance(exc, ProviderError) and exc.kind == ErrorKind.TRANSPORT:
        return _USER_MESSAGES[ProviderTransportFailure]
    for cls, text in _USER_MESSAGES.items():
        if isinstance(exc, cls):
            return text
    return GENERIC_ERROR
