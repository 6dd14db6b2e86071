"""Provider interface. Implement this to connect a language-model backend."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence

from ..errors import ErrorKind, ProviderError
from ..messages import ChatMessage, ToolCall
from ..tools.base import ToolSpec


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a provider accepts, fixed when the provider is constructed.

    native_tools: tool specs are passed structurally and tool calls come
        back structured
    vision: the model can reason over images
    raw_image_markers: ``[IMAGE:path]`` markers can be passed as-is
    encode_tool_images: images produced by tools must be inlined too
    """

    native_tools: bool = False
    vision: bool = False
    raw_image_markers: bool = False
    encode_tool_images: bool = False


@dataclass
class ProviderResponse:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict = field(default_factory=dict)


DEFAULT_OVERFLOW_MARKERS = (
    "context_length_exceeded",
    "context length",
    "context window",
    "maximum context",
    "prompt is too long",
    "too many tokens",
    "input is too long",
    "reduce the length",
)


class ErrorClassifier:
    """Maps a provider failure to an ``ErrorKind``. One per provider variant."""

    def classify(self, error: BaseException | str) -> ErrorKind:
        return ErrorKind.FATAL


class KeywordClassifier(ErrorClassifier):
    """Classifies by matching error text against a keyword vocabulary."""

    def __init__(
        self,
        overflow_markers: Sequence[str] = DEFAULT_OVERFLOW_MARKERS,
        transport_markers: Sequence[str] = (),
    ):
        self.overflow_markers = tuple(m.lower() for m in overflow_markers)
        self.transport_markers = tuple(m.lower() for m in transport_markers)

    def classify(self, error: BaseException | str) -> ErrorKind:
        text = str(error).lower()
        if any(marker in text for marker in self.overflow_markers):
            return ErrorKind.OVERFLOW
        if any(marker in text for marker in self.transport_markers):
            return ErrorKind.TRANSPORT
        return ErrorKind.FATAL


class Provider(ABC):
    """A chat backend.

    ``chat`` raises ``ProviderError`` with a classified ``kind``; anything
    else escaping it is treated as fatal by the tool-call loop.
    """

    name: str = "provider"
    capabilities: ProviderCapabilities = ProviderCapabilities()
    classifier: ErrorClassifier = KeywordClassifier()

    @abstractmethod
    async def chat(
        self,
        history: Sequence[ChatMessage],
        tool_specs: Sequence[ToolSpec] = (),
        system_prompt: str | None = None,
    ) -> ProviderResponse:
        """Send the conversation and return the model's answer."""
        ...

    async def close(self) -> None:
        """Release long-lived resources. Called once at shutdown."""
        pass

    def error(self, error: BaseException | str) -> ProviderError:
        """Wrap a raw failure in a classified ``ProviderError``."""
        return ProviderError(str(error), self.classifier.classify(error))
