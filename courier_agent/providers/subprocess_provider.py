"""Provider backed by an external CLI, either per request or as a long-lived daemon.

Daemon wire protocol (newline-delimited JSON on stdin/stdout):

    request   {"prompt": "<text>", "stream": true|false}
    response  {"content": "<chunk>", "done": false}   (repeated while streaming)
              {"content": "<chunk>", "done": true}    (ends a streamed answer)
              {"content": "<text>"}                   (a whole non-streamed answer)
              {"error": "<text>"}                     (provider-reported failure)

Responses carry no request id, so a session only ever has one request in
flight. When the daemon misbehaves (broken pipe, EOF, timeout, malformed
line) the session is killed, the request is retried once in one-shot mode,
and a fresh daemon is spawned on the next request.
"""

import asyncio
import json
import logging
from typing import Sequence

from ..errors import Cancelled, ErrorKind, ProviderError, ProviderTransportFailure
from ..messages import ChatMessage
from ..scope import CancellationToken, current_token
from ..tools.base import ToolSpec, format_tool_instructions, parse_tool_calls
from .base import ErrorClassifier, KeywordClassifier, Provider, ProviderCapabilities, ProviderResponse

logger = logging.getLogger("courier_agent.providers.subprocess")

# asyncio's default 64 KiB line limit is too small for long answers.
STREAM_LIMIT = 16 * 1024 * 1024

SUBPROCESS_OVERFLOW_MARKERS = (
    "context window",
    "context length",
    "conversation is too long",
    "prompt is too long",
    "too many tokens",
    "exceeds the maximum",
)


class DaemonError(Exception):
    """The daemon transport failed; the session can no longer be trusted."""


class _DaemonReportedError(Exception):
    """The daemon answered with an ``error`` line. The session stays healthy."""


class DaemonSession:
    """One running daemon process plus its line-oriented request channel."""

    def __init__(self, process: asyncio.subprocess.Process, read_timeout: float = 120.0):
        self.process = process
        self.read_timeout = read_timeout
        self._lock = asyncio.Lock()
        self._dead = False

    @classmethod
    async def spawn(cls, command: Sequence[str], read_timeout: float = 120.0) -> "DaemonSession":
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise DaemonError(f"could not start daemon {command[0]!r}: {exc}") from exc
        logger.info("Spawned provider daemon pid=%s (%s)", process.pid, command[0])
        return cls(process, read_timeout)

    @property
    def alive(self) -> bool:
        return not self._dead and self.process.returncode is None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def request(
        self, prompt: str, stream: bool = True, token: CancellationToken | None = None
    ) -> str:
        """Send one prompt and return the full answer.

        Callers queue on the session lock, so exactly one request is on the
        wire at a time. A request whose ``token`` was cancelled while it
        queued is dropped before anything is written. Any transport failure
        or cancellation mid-exchange kills the session, since a half-read
        response would be attributed to the next request.
        """
        async with self._lock:
            if token is not None and token.cancelled:
                logger.debug("Skipping daemon request cancelled while queued")
                raise Cancelled()
            if not self.alive:
                raise DaemonError("daemon session is dead")
            try:
                return await self._exchange(prompt, stream)
            except _DaemonReportedError:
                raise
            except DaemonError:
                self.kill()
                raise
            except asyncio.CancelledError:
                logger.warning("Daemon request cancelled mid-exchange, killing session")
                self.kill()
                raise

    async def _exchange(self, prompt: str, stream: bool) -> str:
        line = json.dumps({"prompt": prompt, "stream": stream}) + "\n"
        try:
            self.process.stdin.write(line.encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
            raise DaemonError(f"write failed: {exc}") from exc

        chunks: list[str] = []
        while True:
            try:
                raw = await asyncio.wait_for(self.process.stdout.readline(), self.read_timeout)
            except asyncio.TimeoutError:
                raise DaemonError(f"no response line within {self.read_timeout:g}s")
            except (ValueError, asyncio.LimitOverrunError) as exc:
                raise DaemonError(f"response line too long: {exc}") from exc
            if not raw:
                raise DaemonError("daemon closed its output")
            if not raw.strip():
                continue
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise DaemonError(f"malformed response line: {raw[:200]!r}") from exc
            if not isinstance(data, dict):
                raise DaemonError(f"unexpected response line: {raw[:200]!r}")

            if "error" in data:
                raise _DaemonReportedError(str(data["error"]))
            content = data.get("content", "")
            if not isinstance(content, str):
                raise DaemonError("response content is not a string")
            chunks.append(content)

            done = data.get("done")
            if done is None or done is True:
                return "".join(chunks)

    def kill(self) -> None:
        self._dead = True
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def close(self) -> None:
        self.kill()
        await self.process.wait()


class SubprocessProvider(Provider):
    """Chat provider that shells out to a CLI agent.

    ``mode="oneshot"`` spawns ``oneshot_command`` per request and writes the
    prompt to its stdin. ``mode="daemon"`` keeps ``daemon_command`` running
    and talks to it over the line protocol above, falling back to one-shot
    for any request the daemon fails to answer.
    """

    name = "subprocess"

    def __init__(
        self,
        oneshot_command: Sequence[str],
        daemon_command: Sequence[str] | None = None,
        mode: str = "daemon",
        stream: bool = True,
        read_timeout: float = 120.0,
        oneshot_timeout: float = 300.0,
        agent: str = "",
        model: str = "",
        capabilities: ProviderCapabilities | None = None,
        classifier: ErrorClassifier | None = None,
    ):
        if mode not in ("oneshot", "daemon"):
            raise ValueError(f"unknown subprocess mode: {mode!r}")
        if not oneshot_command:
            raise ValueError("oneshot_command is required (it is also the daemon fallback)")
        if mode == "daemon" and not daemon_command:
            raise ValueError("daemon mode needs a daemon_command")
        self.oneshot_command = list(oneshot_command)
        self.daemon_command = list(daemon_command or [])
        self.mode = mode
        self.stream = stream
        self.read_timeout = read_timeout
        self.oneshot_timeout = oneshot_timeout
        self.agent = agent
        self.model = model
        self.capabilities = capabilities or ProviderCapabilities(raw_image_markers=True)
        self.classifier = classifier or KeywordClassifier(SUBPROCESS_OVERFLOW_MARKERS)

        self._session: DaemonSession | None = None
        self._spawn_lock = asyncio.Lock()
        self.daemon_spawns = 0
        self.oneshot_invocations = 0
        self.fallbacks = 0

    # --- Provider interface ---

    async def chat(
        self,
        history: Sequence[ChatMessage],
        tool_specs: Sequence[ToolSpec] = (),
        system_prompt: str | None = None,
    ) -> ProviderResponse:
        prompt = self.render_prompt(history, tool_specs, system_prompt)
        text = await self.complete(prompt)
        content, calls = parse_tool_calls(text)
        return ProviderResponse(content=content, tool_calls=calls)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    # --- Prompt assembly ---

    def render_prompt(
        self,
        history: Sequence[ChatMessage],
        tool_specs: Sequence[ToolSpec] = (),
        system_prompt: str | None = None,
    ) -> str:
        parts = []
        system = "\n\n".join(s for s in (system_prompt, format_tool_instructions(list(tool_specs))) if s)
        if system:
            parts.append(f"System: {system}")
        for msg in history:
            if msg.role == "system":
                parts.append(f"System: {msg.content}")
            elif msg.role == "user":
                parts.append(f"User: {msg.content}")
            elif msg.role == "assistant":
                text = msg.content
                for call in msg.tool_calls:
                    block = json.dumps({"name": call.name, "arguments": call.arguments})
                    text += f"\n<tool_call>{block}</tool_call>"
                parts.append(f"Assistant: {text.strip()}")
            elif msg.role == "tool":
                parts.append(f"Tool result ({msg.name or 'tool'}): {msg.content}")
        return "\n\n".join(parts)

    # --- Transport ---

    async def complete(self, prompt: str) -> str:
        if self.mode == "oneshot":
            return await self._oneshot(prompt)

        token = current_token.get()
        try:
            session = await self._ensure_session()
            return await session.request(prompt, self.stream, token)
        except _DaemonReportedError as exc:
            raise ProviderError(str(exc), self.classifier.classify(str(exc))) from exc
        except DaemonError as exc:
            if token is not None:
                token.raise_if_cancelled()
            self.fallbacks += 1
            logger.warning("Provider daemon failed (%s); answering this request in one-shot mode", exc)
            return await self._oneshot(prompt)

    async def _ensure_session(self) -> DaemonSession:
        async with self._spawn_lock:
            if self._session is not None and self._session.alive:
                return self._session
            if self._session is not None:
                logger.info("Respawning dead provider daemon")
                await self._session.close()
                self._session = None
            self._session = await DaemonSession.spawn(self.daemon_command, self.read_timeout)
            self.daemon_spawns += 1
            return self._session

    def _oneshot_argv(self) -> list[str]:
        argv = list(self.oneshot_command)
        if self.agent:
            argv += ["--agent", self.agent]
        if self.model:
            argv += ["--model", self.model]
        return argv

    async def _oneshot(self, prompt: str) -> str:
        argv = self._oneshot_argv()
        self.oneshot_invocations += 1
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProviderTransportFailure(f"failed to execute {argv[0]}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8")), self.oneshot_timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ProviderTransportFailure(f"{argv[0]} timed out after {self.oneshot_timeout:g}s")

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            kind = self.classifier.classify(detail) if detail else ErrorKind.FATAL
            raise ProviderError(
                f"{argv[0]} exited with status {proc.returncode}: {detail[:500]}", kind
            )
        return stdout.decode("utf-8", errors="replace").strip()
