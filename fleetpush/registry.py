"""Live session registries: connected agents and connected dashboards.

Each structure owns one ``asyncio.Lock``.  Mutations run under it, and a
``publish`` callback passed to a mutation runs under it too, so the
snapshot sent to dashboards is the state right after that mutation and
broadcasts leave in mutation order.  ``snapshot``/``get`` are synchronous
copies, which makes them atomic on the event loop.

There is no liveness sweep: an agent whose socket died silently stays
registered until the transport reports the close.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from fleetpush.models import AgentRecord, utcnow

logger = logging.getLogger(__name__)

PublishFn = Callable[[list[dict]], Awaitable[None]]


class AgentRegistry:
    """Agent id → live record.  One entry per id, last writer wins."""

    def __init__(self) -> None:
        self._agents: dict[str, AgentRecord] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def get(self, agent_id: str) -> AgentRecord | None:
        return self._agents.get(agent_id)

    def snapshot(self) -> list[dict]:
        """Public fields of every agent, in connection order."""
        return [record.public_dict() for record in self._agents.values()]

    async def register(self, record: AgentRecord, publish: PublishFn | None = None) -> None:
        async with self._lock:
            previous = self._agents.pop(record.id, None)
            if previous is not None:
                logger.info("Agent %s reconnected, replacing previous session", record.id)
            self._agents[record.id] = record
            if publish is not None:
                await publish(self.snapshot())

    async def touch(self, agent_id: str) -> datetime | None:
        """Bump ``last_seen``; returns the new value or None if unknown."""
        async with self._lock:
            record = self._agents.get(agent_id)
            if record is None:
                return None
            now = utcnow()
            # Clock steps backwards must not move lastSeen backwards.
            if now > record.last_seen:
                record.last_seen = now
            return record.last_seen

    async def remove(
        self,
        agent_id: str,
        connection: Any = None,
        publish: PublishFn | None = None,
    ) -> bool:
        """Drop *agent_id*.

        With *connection* given, only an entry still bound to that
        connection is removed; the close of a replaced session is a no-op.
        """
        async with self._lock:
            record = self._agents.get(agent_id)
            if record is None:
                return False
            if connection is not None and record.connection is not connection:
                logger.debug("Ignoring close of superseded session for %s", agent_id)
                return False
            del self._agents[agent_id]
            if publish is not None:
                await publish(self.snapshot())
            return True


class DashboardSet:
    """Unordered set of dashboard connections with broadcast."""

    def __init__(self) -> None:
        self._members: set[Any] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, connection: object) -> bool:
        return connection in self._members

    async def add(
        self,
        connection: Any,
        greet: Callable[[Any], None] | None = None,
    ) -> None:
        """Admit *connection*.  *greet* runs first, under the set's lock,
        so its messages precede any broadcast the new member receives."""
        async with self._lock:
            if greet is not None:
                greet(connection)
            self._members.add(connection)

    async def remove(self, connection: Any) -> None:
        async with self._lock:
            self._members.discard(connection)

    async def broadcast(self, message: dict) -> int:
        """Send *message* to every open member; returns deliveries queued."""
        async with self._lock:
            delivered = 0
            for connection in self._members:
                if not connection.is_open:
                    continue
                if connection.send(message):
                    delivered += 1
            return delivered
