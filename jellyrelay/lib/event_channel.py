"""
Persistent websocket to the Jellyfin /socket endpoint.

Reconnects with exponential backoff when the connection drops, sends the
KeepAlive heartbeat the server expects, and decodes incoming envelopes into
directives for the registered handler.

Usage:
    channel = EventChannel(api.websocket_url(), headers=api.headers())
    channel.set_message_handler(my_callback)   # async def (directive) -> None
    channel.start()
    await channel.wait_ready()
    ...
    await channel.close()
"""

import asyncio
import json
import logging

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import cfg, cfg_duration
from .directives import (
    FORCE_KEEP_ALIVE,
    KEEP_ALIVE,
    DirectiveError,
    parse_directive,
)

logger = logging.getLogger(__name__)

MAX_BACKOFF = 60.0


class ConnectionExhausted(Exception):
    """The socket could not be (re)established within the allowed attempts."""


class EventChannel:
    """Reconnecting Jellyfin websocket feeding typed directives to one handler."""

    def __init__(self, url: str, *, headers: dict | None = None, keep_alive_interval=None,
                 backoff=None, max_attempts=None, max_backoff: float = MAX_BACKOFF,
                 open_timeout: float = 10.0):
        self.url = url
        self.headers = headers or {}
        self.keep_alive_interval = keep_alive_interval if keep_alive_interval is not None else \
            cfg_duration("timing", "keep_alive", default=15)
        self.backoff = backoff if backoff is not None else \
            cfg_duration("timing", "reconnect_backoff", default=5)
        self.max_attempts = int(max_attempts if max_attempts is not None else
                                cfg("timing", "reconnect_attempts", default=8))
        self.max_backoff = max_backoff
        self.open_timeout = open_timeout

        self.ready = asyncio.Event()
        self.connected = False
        self._handler = None
        self._ws = None
        self._task: asyncio.Task | None = None
        self._keep_alive_task: asyncio.Task | None = None
        self._closed = False

    def set_message_handler(self, callback):
        """Register async callback for incoming directives.

        Callback signature: async def handler(directive) -> None
        """
        self._handler = callback

    def start(self):
        """Start the background connection loop."""
        if self._task is None:
            self._closed = False
            self._task = asyncio.create_task(self._run())

    async def wait_ready(self):
        """Return once the first connection is up.

        Raises ConnectionExhausted if the loop gives up (or is closed) first.
        """
        if self.ready.is_set():
            return
        if self._task is None:
            raise ConnectionExhausted("channel was never started")
        ready_wait = asyncio.ensure_future(self.ready.wait())
        try:
            await asyncio.wait({ready_wait, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not ready_wait.done():
                ready_wait.cancel()
        if self.ready.is_set():
            return
        if not self._task.cancelled() and self._task.exception() is not None:
            raise self._task.exception()
        raise ConnectionExhausted("channel closed before it became ready")

    async def wait_closed(self):
        """Wait for the connection loop to end.  Raises ConnectionExhausted on give-up."""
        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def close(self):
        """Stop reconnecting and close the socket.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._handler = None
        await self._cancel_keep_alive()
        if self._ws is not None:
            try:
                await self._ws.close()
            except (WebSocketException, OSError):
                pass
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except (asyncio.CancelledError, ConnectionExhausted):
                pass
        self.connected = False
        logger.info("Jellyfin socket closed")

    # ── Connection loop ──

    async def _run(self):
        failures = 0
        delay = self.backoff
        while not self._closed:
            try:
                logger.info("Connecting to Jellyfin socket %s", self._redacted_url())
                async with websockets.connect(self.url, additional_headers=self.headers,
                                              open_timeout=self.open_timeout) as ws:
                    self._ws = ws
                    self.connected = True
                    failures = 0
                    delay = self.backoff
                    self.ready.set()
                    logger.info("Jellyfin socket connected")
                    self._keep_alive_task = asyncio.create_task(self._keep_alive_loop(ws))
                    try:
                        async for payload in ws:
                            await self._handle_payload(ws, payload)
                    finally:
                        self.connected = False
                        self._ws = None
                        await self._cancel_keep_alive()
                if self._closed:
                    return
                logger.warning("Jellyfin socket closed by server")
            except ConnectionClosed as e:
                if self._closed:
                    return
                logger.warning("Jellyfin socket lost (%s)", e)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                if self._closed:
                    return
                logger.warning("Jellyfin socket connect failed (%s)", e)

            failures += 1
            if failures >= self.max_attempts:
                logger.error("Giving up on Jellyfin socket after %d attempts", failures)
                raise ConnectionExhausted(
                    f"Jellyfin socket unavailable after {failures} attempts")
            logger.warning("Reconnecting in %.1fs (attempt %d/%d)",
                           delay, failures + 1, self.max_attempts)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_backoff)

    def _redacted_url(self) -> str:
        if "api_key=" not in self.url:
            return self.url
        head, _, tail = self.url.partition("api_key=")
        _, amp, rest = tail.partition("&")
        return f"{head}api_key=***{amp}{rest}"

    async def _handle_payload(self, ws, payload):
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        try:
            msg = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Dropping non-JSON message: %.200s", payload)
            return
        if not isinstance(msg, dict) or not msg.get("MessageType"):
            logger.debug("Dropping message without MessageType: %.200s", payload)
            return

        message_type = str(msg["MessageType"])
        if message_type == FORCE_KEEP_ALIVE:
            await self._send_keep_alive(ws)
            return
        if message_type == KEEP_ALIVE:
            return

        try:
            directive = parse_directive(message_type, msg.get("Data"))
        except DirectiveError as e:
            logger.warning("Dropping %s message: %s", message_type, e)
            return
        except (ValueError, OverflowError) as e:
            logger.warning("Dropping %s message with unusable values: %s", message_type, e)
            return
        if directive is None:
            logger.debug("Ignoring %s message", message_type)
            return
        if self._handler:
            await self._handler(directive)

    # ── Keep-alive ──

    async def _send_keep_alive(self, ws):
        try:
            await ws.send(json.dumps({"MessageType": KEEP_ALIVE}))
        except (WebSocketException, OSError) as e:
            logger.warning("Failed to send keep-alive: %s", e)

    async def _keep_alive_loop(self, ws):
        while True:
            await asyncio.sleep(self.keep_alive_interval)
            await self._send_keep_alive(ws)

    async def _cancel_keep_alive(self):
        task, self._keep_alive_task = self._keep_alive_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
