"""Outbound side of one WebSocket session.

``send`` never blocks: messages go onto a bounded queue drained by a writer
task.  A full queue or a closed socket drops the message; delivery is best
effort and nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


class Connection:
    """Wraps a WebSocket with a non-blocking, best-effort ``send``."""

    def __init__(self, websocket: WebSocket, label: str = "", queue_size: int = 256) -> None:
        self.websocket = websocket
        self.label = label
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._writer: asyncio.Task | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"<Connection {self.label or id(self)}>"

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def start(self) -> None:
        """Start the writer task.  Call after the socket is accepted."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def send(self, message: dict[str, Any]) -> bool:
        """Queue *message*; returns False when it was dropped."""
        if not self.is_open:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Send queue full for %s, dropping %s", self, message.get("type"))
            return False
        return True

    async def close(self) -> None:
        """Stop the writer; queued messages that were not sent are lost."""
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.websocket.send_json(message)
            except Exception:
                logger.debug("Send to %s failed, marking closed", self, exc_info=True)
                self._closed = True
                return
