"""HTTP channel: messages in via REST, replies out via a long-polled outbox."""

import asyncio
import logging
import time
from collections import deque
from typing import AsyncIterator

from aiohttp import web

from ..context import ContextManager
from ..messages import ChannelMessage, ConversationKey, SendMessage
from .base import Channel

logger = logging.getLogger("courier_agent.channels.http")

MAX_POLL_WAIT = 60.0
# Per-recipient reply cap and how long an uncollected reply is kept.
OUTBOX_LIMIT = 100
OUTBOX_TTL = 3600.0


class HttpChannel(Channel):
    """Framework-agnostic HTTP ingress.

    ``POST /api/send`` enqueues a message and answers 202 immediately;
    replies are collected from ``GET /api/outbox/{recipient}``. A reply for a
    superseded message is never delivered, so clients simply keep polling.

    Uncollected replies are bounded: each recipient keeps at most
    ``outbox_limit`` (oldest dropped first) and replies older than
    ``outbox_ttl`` seconds are discarded.
    """

    name = "http"

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        token: str | None = None,
        context: ContextManager | None = None,
        outbox_limit: int = OUTBOX_LIMIT,
        outbox_ttl: float = OUTBOX_TTL,
    ):
        if outbox_limit < 1:
            raise ValueError("outbox_limit must be at least 1")
        self.host = host
        self.port = port
        self.token = token
        self.context = context
        self.outbox_limit = outbox_limit
        self.outbox_ttl = outbox_ttl
        self._inbox: asyncio.Queue[ChannelMessage | None] = asyncio.Queue()
        self._outbox: dict[str, deque[dict]] = {}
        self._waiters: dict[str, set[asyncio.Event]] = {}
        self._runner: web.AppRunner | None = None

    # ------------------------------------------------------------------
    # Channel contract
    # ------------------------------------------------------------------

    async def listen(self) -> AsyncIterator[ChannelMessage]:
        while True:
            message = await self._inbox.get()
            if message is None:
                return
            yield message

    async def send(self, message: SendMessage) -> bool:
        now = time.time()
        self._expire(now)
        box = self._outbox.get(message.recipient)
        if box is None:
            box = self._outbox[message.recipient] = deque(maxlen=self.outbox_limit)
        if len(box) == self.outbox_limit:
            logger.warning("Outbox for %s is full, dropping its oldest reply", message.recipient)
        box.append({
            "content": message.content,
            "thread": message.thread,
            "timestamp": now,
        })
        for waiter in self._waiters.get(message.recipient, ()):
            waiter.set()
        return True

    async def health_check(self) -> bool:
        return self._runner is not None

    def _expire(self, now: float) -> None:
        cutoff = now - self.outbox_ttl
        for recipient in list(self._outbox):
            box = self._outbox[recipient]
            while box and box[0]["timestamp"] < cutoff:
                box.popleft()
            if not box:
                del self._outbox[recipient]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _check_auth(self, request: web.Request) -> bool:
        if not self.token:
            return True
        auth = request.headers.get("Authorization", "")
        return auth == f"Bearer {self.token}"

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.path.startswith("/health"):
            return await handler(request)
        if not self._check_auth(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        return await handler(request)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "channel": self.name,
            "pending": self._inbox.qsize(),
        })

    async def _send(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "body must be a JSON object"}, status=400)
        message = body.get("message", "")
        sender = body.get("sender", "")
        if not message:
            return web.json_response({"error": "message is required"}, status=400)
        if not sender:
            return web.json_response({"error": "sender is required"}, status=400)

        inbound = ChannelMessage(
            sender=str(sender),
            content=str(message),
            channel=self.name,
            reply_target=str(sender),
            thread=body.get("thread") or None,
        )
        await self._inbox.put(inbound)
        return web.json_response(
            {"id": inbound.id, "session_key": str(inbound.conversation_key)},
            status=202,
        )

    async def _outbox_poll(self, request: web.Request) -> web.Response:
        recipient = request.match_info["recipient"]
        try:
            wait = min(float(request.query.get("wait", "0")), MAX_POLL_WAIT)
        except ValueError:
            return web.json_response({"error": "wait must be a number"}, status=400)

        self._expire(time.time())
        if recipient not in self._outbox and wait > 0:
            waiter = asyncio.Event()
            self._waiters.setdefault(recipient, set()).add(waiter)
            try:
                await asyncio.wait_for(waiter.wait(), wait)
            except asyncio.TimeoutError:
                pass
            finally:
                waiters = self._waiters[recipient]
                waiters.discard(waiter)
                if not waiters:
                    del self._waiters[recipient]

        messages = list(self._outbox.pop(recipient, ()))
        return web.json_response({"recipient": recipient, "messages": messages})

    async def _list_sessions(self, _request: web.Request) -> web.Response:
        if self.context is None:
            return web.json_response([])
        return web.json_response([{"session_key": str(k)} for k in self.context.keys()])

    async def _history(self, request: web.Request) -> web.Response:
        raw_key = request.match_info["key"]
        if self.context is None:
            return web.json_response({"error": "history not available"}, status=404)
        try:
            key = ConversationKey.parse(raw_key)
        except ValueError:
            return web.json_response({"error": "invalid session key"}, status=400)
        history = await self.context.snapshot(key)
        return web.json_response({
            "session_key": raw_key,
            "messages": [m.to_dict() for m in history],
        })

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_get("/health", self._health)
        app.router.add_post("/api/send", self._send)
        app.router.add_get("/api/outbox/{recipient}", self._outbox_poll)
        app.router.add_get("/api/sessions", self._list_sessions)
        app.router.add_get("/api/sessions/{key}/history", self._history)
        return app

    async def start(self) -> None:
        app = self._build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("HTTP channel listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        await self._inbox.put(None)
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("HTTP channel stopped")
