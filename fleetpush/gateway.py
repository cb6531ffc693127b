"""Connection gateway: the single WebSocket entry point.

Connection-time query parameters pick the role:

  /ws?role=dashboard
  /ws?role=agent&token=<secret>&id=<optional>&hostname=<h>&user=<u>

``role`` defaults to ``agent``.  An agent whose token does not match the
shared secret is closed before the handshake completes with 1008 (policy
violation); nothing is registered and no message is exchanged.
Dashboards are admitted unconditionally.

Mount it in FastAPI via::

    app.add_api_websocket_route("/ws", gateway.handle)
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid

from fastapi import WebSocket, WebSocketDisconnect, status

from fleetpush.connection import Connection
from fleetpush.dispatch import Hub

logger = logging.getLogger(__name__)

ROLE_AGENT = "agent"
ROLE_DASHBOARD = "dashboard"


async def _receive_frame(websocket: WebSocket) -> str | bytes:
    """Next text or binary frame; raises WebSocketDisconnect on close."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    if message.get("text") is not None:
        return message["text"]
    return message.get("bytes") or b""


class Gateway:
    """Classifies, authenticates and services each WebSocket session."""

    def __init__(self, hub: Hub, agent_token: str, send_queue_size: int = 256) -> None:
        self.hub = hub
        self.agent_token = agent_token
        self.send_queue_size = send_queue_size

    def is_valid_token(self, token: str | None) -> bool:
        if not token or not self.agent_token:
            return False
        return secrets.compare_digest(token.encode(), self.agent_token.encode())

    async def handle(self, websocket: WebSocket) -> None:
        params = websocket.query_params
        role = params.get("role") or ROLE_AGENT
        if role == ROLE_DASHBOARD:
            await self._serve_dashboard(websocket)
        else:
            await self._serve_agent(websocket)

    # ── Agents ─────────────────────────────────────────────────────

    async def _serve_agent(self, websocket: WebSocket) -> None:
        params = websocket.query_params
        if not self.is_valid_token(params.get("token")):
            client = websocket.client.host if websocket.client else "?"
            logger.warning("Rejected agent connection from %s: bad token", client)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        agent_id = params.get("id") or str(uuid.uuid4())
        hostname = params.get("hostname", "")
        user = params.get("user", "")

        await websocket.accept()
        conn = Connection(websocket, label=f"agent:{agent_id}", queue_size=self.send_queue_size)
        conn.start()
        try:
            await self.hub.agent_connected(agent_id, hostname, user, conn)
            while True:
                raw = await _receive_frame(websocket)
                await self.hub.handle_agent_message(agent_id, raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Error in agent WebSocket for %s", agent_id)
        finally:
            await asyncio.shield(self._teardown_agent(agent_id, conn))

    # ── Dashboards ─────────────────────────────────────────────────

    async def _serve_dashboard(self, websocket: WebSocket) -> None:
        await websocket.accept()
        conn = Connection(websocket, label="dashboard", queue_size=self.send_queue_size)
        conn.start()
        try:
            await self.hub.dashboard_connected(conn)
            while True:
                raw = await _receive_frame(websocket)
                await self.hub.handle_dashboard_message(raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Error in dashboard WebSocket")
        finally:
            await asyncio.shield(self._teardown_dashboard(conn))

    # ── Teardown ───────────────────────────────────────────────────
    # Shielded so a cancelled handler still leaves the registries clean.

    async def _teardown_agent(self, agent_id: str, conn: Connection) -> None:
        await conn.close()
        await self.hub.agent_disconnected(agent_id, conn)

    async def _teardown_dashboard(self, conn: Connection) -> None:
        await conn.close()
        await self.hub.dashboard_disconnected(conn)
