"""Dispatch/broadcast core.

Implements the message protocol on top of the registries:

  Dashboard → Server:
    install_request {packageId, targetAgentIds}

  Agent → Server:
    status {status, detail}

  Server → Dashboard:
    packages {packages}, agents {agents}, status {agentId, status, detail}

  Server → Agent:
    install_request {package: {id, name, version, sha256, sizeBytes, url, typeHint}}

Unknown packages, unknown or closed agents and malformed payloads are all
dropped without a reply.  Install commands are fire-and-forget.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

from pydantic import ValidationError

from fleetpush.catalog import PackageCatalog
from fleetpush.ingest import IngestPipeline
from fleetpush.models import (
    AgentRecord,
    AgentStatusMessage,
    InstallRequestMessage,
    Package,
)
from fleetpush.registry import AgentRegistry, DashboardSet

logger = logging.getLogger(__name__)


def parse_message(raw: str | bytes) -> dict[str, Any] | None:
    """Decode a JSON object frame; anything else yields None."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return data


class Hub:
    """Owns nothing global: registries and catalog are passed in."""

    def __init__(
        self,
        catalog: PackageCatalog,
        agents: AgentRegistry,
        dashboards: DashboardSet,
        pipeline: IngestPipeline,
        public_url: str = "",
    ) -> None:
        self.catalog = catalog
        self.agents = agents
        self.dashboards = dashboards
        self.pipeline = pipeline
        self.public_url = public_url.rstrip("/")

    # ── Fan-out ────────────────────────────────────────────────────

    async def publish_packages(self, packages: list[dict]) -> None:
        await self.dashboards.broadcast({"type": "packages", "packages": packages})

    async def publish_agents(self, agents: list[dict]) -> None:
        await self.dashboards.broadcast({"type": "agents", "agents": agents})

    # ── Session lifecycle ──────────────────────────────────────────

    async def agent_connected(
        self, agent_id: str, hostname: str, user: str, connection: Any
    ) -> AgentRecord:
        record = AgentRecord(id=agent_id, hostname=hostname, user=user, connection=connection)
        await self.agents.register(record, publish=self.publish_agents)
        logger.info("Agent connected: %s (%s@%s)", agent_id, user, hostname)
        return record

    async def agent_disconnected(self, agent_id: str, connection: Any) -> None:
        removed = await self.agents.remove(agent_id, connection, publish=self.publish_agents)
        if removed:
            logger.info("Agent disconnected: %s", agent_id)

    async def dashboard_connected(self, connection: Any) -> None:
        def greet(conn: Any) -> None:
            conn.send({"type": "packages", "packages": self.catalog.snapshot()})
            conn.send({"type": "agents", "agents": self.agents.snapshot()})

        await self.dashboards.add(connection, greet=greet)
        logger.info("Dashboard connected (%d open)", len(self.dashboards))

    async def dashboard_disconnected(self, connection: Any) -> None:
        await self.dashboards.remove(connection)
        logger.info("Dashboard disconnected (%d open)", len(self.dashboards))

    # ── Inbound messages ───────────────────────────────────────────

    async def handle_dashboard_message(self, raw: str | bytes) -> None:
        data = parse_message(raw)
        if data is None:
            logger.debug("Ignoring malformed dashboard frame")
            return
        if data.get("type") != "install_request":
            logger.debug("Ignoring dashboard message type %r", data.get("type"))
            return
        try:
            request = InstallRequestMessage.model_validate(data)
        except ValidationError:
            logger.debug("Ignoring invalid install_request: %r", data)
            return
        await self.dispatch_install(request.package_id, request.target_agent_ids)

    async def handle_agent_message(self, agent_id: str, raw: str | bytes) -> None:
        await self.agents.touch(agent_id)
        data = parse_message(raw)
        if data is None:
            logger.debug("Ignoring malformed frame from agent %s", agent_id)
            return
        if data.get("type") != "status":
            logger.debug("Ignoring agent %s message type %r", agent_id, data.get("type"))
            return
        try:
            message = AgentStatusMessage.model_validate(data)
        except ValidationError:
            logger.debug("Ignoring invalid status from %s: %r", agent_id, data)
            return
        await self.relay_status(agent_id, message.status, message.detail or "")

    # ── Operations ─────────────────────────────────────────────────

    def package_url(self, package: Package) -> str:
        return f"{self.public_url}/packages/{quote(package.filename)}"

    async def dispatch_install(self, package_id: str, target_agent_ids: list[str]) -> int:
        """Send one ``install_request`` per reachable target.

        Returns the number of commands queued; unknown packages and
        unknown or closed agents contribute nothing.
        """
        package = self.catalog.get(package_id)
        if package is None:
            logger.debug("install_request for unknown package %s dropped", package_id)
            return 0

        command = {
            "type": "install_request",
            "package": package.command_payload(self.package_url(package)),
        }
        delivered = 0
        for agent_id in dict.fromkeys(target_agent_ids):
            record = self.agents.get(agent_id)
            if record is None or not record.connection.is_open:
                logger.debug("install target %s not connected, skipped", agent_id)
                continue
            if record.connection.send(command):
                delivered += 1

        logger.info(
            "install_request %s (%s %s) queued for %d/%d agent(s)",
            package.id, package.name, package.version, delivered, len(target_agent_ids),
        )
        return delivered

    async def relay_status(self, agent_id: str, status: str | int, detail: str = "") -> int:
        return await self.dashboards.broadcast({
            "type": "status",
            "agentId": agent_id,
            "status": status,
            "detail": detail,
        })

    async def ingest(
        self,
        temp_path: str | Path,
        original_filename: str,
        name: str | None = None,
        version: str | None = None,
    ) -> Package:
        """Store, hash, catalog and announce one uploaded binary.

        On any failure the stored binary is removed and the catalog and
        dashboards are untouched.
        """
        package = await self.pipeline.ingest(temp_path, original_filename, name, version)
        try:
            await self.catalog.append(package, publish=self.publish_packages)
        except BaseException:
            self.pipeline.discard(package)
            raise
        return package
