"""fleetpush agent — receives install commands and reports progress.

For every ``install_request`` the agent reports, in order:

  downloading → downloaded | failed
  and, with an installer hook: installing → installed | failed

Installing is delegated to the hook; without one the agent stops after a
verified download.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .config import AgentConfig
from .downloader import DownloadError, download_package
from .ws_client import AgentWSClient

logger = logging.getLogger(__name__)

Installer = Callable[[Path, dict], Awaitable[None]]


class PackageAgent:
    """Connects to the server and services install commands."""

    def __init__(self, config: AgentConfig, installer: Optional[Installer] = None):
        self.config = config
        self.installer = installer
        self.ws = AgentWSClient(
            config.server_url,
            config.token,
            agent_id=config.agent_id,
            hostname=config.hostname,
            user=config.user,
            reconnect_delay=config.reconnect_delay,
            max_reconnect_delay=config.max_reconnect_delay,
        )
        self.ws.on("install_request", self._on_install_request)
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        logger.info("=== fleetpush agent ===")
        logger.info("ID: %s | Host: %s | User: %s",
                    self.config.agent_id, self.config.hostname, self.config.user)
        await self.ws.run_forever()

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.ws.disconnect()

    async def _on_install_request(self, msg: dict) -> None:
        package = msg.get("package")
        if not isinstance(package, dict) or not package.get("url"):
            logger.warning("install_request without a usable package: %r", msg)
            return
        # Downloads run in the background so the listen loop stays responsive.
        task = asyncio.create_task(self.handle_install(package))
        self._tasks.add(task)
        task.add_done_callback(self._install_done)

    def _install_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Install task crashed", exc_info=task.exception())

    async def handle_install(self, package: dict) -> None:
        label = f"{package.get('name', '')} {package.get('version', '')}".strip()
        await self.ws.send_status("downloading", label)
        try:
            path = await download_package(
                package, self.config.download_dir, timeout=self.config.download_timeout
            )
        except DownloadError as e:
            logger.error("Download of %s failed: %s", label, e)
            await self.ws.send_status("failed", str(e))
            return
        await self.ws.send_status("downloaded", label)

        if self.installer is None:
            return
        await self.ws.send_status("installing", label)
        try:
            await self.installer(path, package)
        except Exception as e:
            logger.exception("Installer failed for %s", label)
            await self.ws.send_status("failed", f"install failed: {e}")
            return
        await self.ws.send_status("installed", label)
