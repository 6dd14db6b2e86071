"""Request/response provider for OpenAI-compatible chat completion APIs."""

import json
import logging
from typing import Any, Sequence

import openai
from openai import AsyncOpenAI

from ..attachments import is_local_path, split_content_parts
from ..errors import ErrorKind
from ..messages import ChatMessage, ToolCall
from ..tools.base import ToolSpec
from .base import ErrorClassifier, KeywordClassifier, Provider, ProviderCapabilities, ProviderResponse

logger = logging.getLogger("courier_agent.providers.openai")


class OpenAIErrorClassifier(ErrorClassifier):
    """Uses the SDK's exception types first, then the error text."""

    def __init__(self, keywords: KeywordClassifier | None = None):
        self.keywords = keywords or KeywordClassifier()

    def classify(self, error: BaseException | str) -> ErrorKind:
        if isinstance(error, openai.BadRequestError):
            code = getattr(error, "code", None)
            if code == "context_length_exceeded":
                return ErrorKind.OVERFLOW
        if isinstance(error, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
            return ErrorKind.TRANSPORT
        return self.keywords.classify(error)


class OpenAIProvider(Provider):
    name = "openai"
    capabilities = ProviderCapabilities(native_tools=True, vision=True)

    def __init__(
        self,
        model: str,
        api_key: str = "",
        api_base: str = "",
        client: Any = None,
        temperature: float | None = None,
    ):
        self.model = model
        self.temperature = temperature
        self.classifier = OpenAIErrorClassifier()
        if client is None:
            kwargs: dict[str, Any] = {"api_key": api_key or None}
            if api_base:
                kwargs["base_url"] = api_base
            client = AsyncOpenAI(**kwargs)
        self._client = client

    async def chat(
        self,
        history: Sequence[ChatMessage],
        tool_specs: Sequence[ToolSpec] = (),
        system_prompt: str | None = None,
    ) -> ProviderResponse:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(_to_openai_message(m) for m in history)

        kwargs: dict[str, Any] = {"model": self.model, "messages": messages}
        if tool_specs:
            kwargs["tools"] = [spec.to_openai() for spec in tool_specs]
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature

        try:
            completion = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            raise self.error(exc) from exc

        choice = completion.choices[0]
        message = choice.message
        tool_calls = []
        for tc in message.tool_calls or []:
            try:
                arguments = json.loads(tc.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning("Tool call %s has malformed arguments", tc.function.name)
                arguments = {"input": tc.function.arguments}
            tool_calls.append(ToolCall(name=tc.function.name, arguments=arguments, id=tc.id))

        usage = {}
        if getattr(completion, "usage", None):
            usage = {
                "prompt_tokens": completion.usage.prompt_tokens,
                "completion_tokens": completion.usage.completion_tokens,
            }
        return ProviderResponse(content=message.content or "", tool_calls=tool_calls, usage=usage)

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


def _to_openai_message(msg: ChatMessage) -> dict:
    if msg.role == "tool":
        return {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content}
    if msg.role == "assistant" and msg.tool_calls:
        return {
            "role": "assistant",
            "content": msg.content or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in msg.tool_calls
            ],
        }
    if msg.role == "user":
        parts = split_content_parts(msg.content)
        if any(kind == "image" and not is_local_path(value) for kind, value in parts):
            content = []
            for kind, value in parts:
                if kind == "image" and is_local_path(value):
                    content.append({"type": "text", "text": f"[IMAGE:{value}]"})
                elif kind == "image":
                    content.append({"type": "image_url", "image_url": {"url": value}})
                else:
                    content.append({"type": "text", "text": value})
            return {"role": "user", "content": content}
    return {"role": msg.role, "content": msg.content}
