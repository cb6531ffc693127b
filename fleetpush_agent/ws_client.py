"""WebSocket client for connecting an agent to the fleetpush server.

Agent side of the protocol:
  Agent → Server: status {status, detail}
  Server → Agent: install_request {package}

Identity and the shared secret travel as query parameters of the
connection URL; a wrong token makes the server refuse the handshake.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]


def build_url(
    server_url: str,
    token: str,
    agent_id: str = "",
    hostname: str = "",
    user: str = "",
) -> str:
    """Append the agent's connection parameters to *server_url*."""
    params = {"role": "agent", "token": token}
    if agent_id:
        params["id"] = agent_id
    if hostname:
        params["hostname"] = hostname
    if user:
        params["user"] = user
    parts = urlsplit(server_url)
    query = "&".join(q for q in (parts.query, urlencode(params)) if q)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class AgentWSClient:
    """WebSocket client connecting an agent to the server."""

    def __init__(
        self,
        server_url: str,
        token: str,
        agent_id: str = "",
        hostname: str = "",
        user: str = "",
        reconnect_delay: int = 2,
        max_reconnect_delay: int = 60,
    ):
        self.server_url = server_url
        self.token = token
        self.agent_id = agent_id
        self.hostname = hostname
        self.user = user

        self._ws: Optional[ClientConnection] = None
        self._handlers: dict[str, MessageHandler] = {}
        self._connected = False
        self._initial_delay = reconnect_delay
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay

    @property
    def url(self) -> str:
        return build_url(self.server_url, self.token, self.agent_id, self.hostname, self.user)

    def on(self, msg_type: str, handler: MessageHandler) -> None:
        """Register a handler for a server message type."""
        self._handlers[msg_type] = handler

    async def connect(self) -> bool:
        """Open the connection; False when refused or unreachable."""
        try:
            self._ws = await websockets.connect(
                self.url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )
        except websockets.InvalidStatus as e:
            logger.error(
                "Server refused connection (HTTP %s), check the agent token",
                e.response.status_code,
            )
            return False
        except (OSError, websockets.WebSocketException):
            logger.exception("Failed to connect to %s", self.server_url)
            return False

        self._connected = True
        self._reconnect_delay = self._initial_delay
        logger.info("Connected to server as %s", self.agent_id or "<server-assigned id>")
        return True

    async def _send(self, message: dict) -> None:
        """Send a JSON message."""
        if self._ws:
            await self._ws.send(json.dumps(message))

    async def send_status(self, status: str, detail: str = "") -> None:
        await self._send({"type": "status", "status": status, "detail": detail})

    async def dispatch(self, raw: str | bytes) -> None:
        """Route one server frame to its handler."""
        try:
            msg = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON frame from server")
            return
        if not isinstance(msg, dict):
            return
        msg_type = msg.get("type", "")
        handler = self._handlers.get(msg_type)
        if handler:
            try:
                await handler(msg)
            except Exception:
                logger.exception("Handler error for %s", msg_type)
        else:
            logger.debug("Unhandled message type: %s", msg_type)

    async def listen(self) -> None:
        """Listen for messages from server. Blocks until disconnected."""
        if not self._ws:
            return
        try:
            async for raw in self._ws:
                await self.dispatch(raw)
        except websockets.ConnectionClosed:
            logger.info("Server connection closed")
        except Exception:
            logger.exception("WebSocket listen error")
        finally:
            self._connected = False

    async def disconnect(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None
        self._connected = False

    async def run_forever(self) -> None:
        """Connect, listen, and reconnect with exponential backoff."""
        while True:
            if await self.connect():
                await self.listen()
            logger.info("Reconnecting in %ds...", self._reconnect_delay)
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(
                self._reconnect_delay * 2, self._max_reconnect_delay
            )

    @property
    def connected(self) -> bool:
        return self._connected
