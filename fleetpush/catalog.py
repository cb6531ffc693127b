"""In-memory package catalog over a durable store.

Append-only.  ``append`` persists the whole updated catalog before the new
list becomes visible, so a dashboard never sees a record that is not on
disk.  Appends are serialised by one lock; ``publish`` runs inside it so
catalog broadcasts go out in append order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from fleetpush.models import Package

logger = logging.getLogger(__name__)

PublishFn = Callable[[list[dict]], Awaitable[None]]


class PackageStore(Protocol):
    def load(self) -> list[Package]: ...

    def save(self, packages: list[Package]) -> None: ...


class PackageCatalog:
    """Guarded catalog: ``get``/``snapshot`` read, ``append`` mutates."""

    def __init__(self, store: PackageStore) -> None:
        self.store = store
        self._packages: list[Package] = []
        self._by_id: dict[str, Package] = {}
        self._lock = asyncio.Lock()

    def load(self) -> int:
        """Populate from the store; returns the number of packages."""
        packages = self.store.load()
        self._packages = list(packages)
        self._by_id = {p.id: p for p in packages}
        logger.info("Loaded %d package(s) from catalog", len(packages))
        return len(packages)

    def __len__(self) -> int:
        return len(self._packages)

    def get(self, package_id: str) -> Package | None:
        return self._by_id.get(package_id)

    def snapshot(self) -> list[dict]:
        """Point-in-time copy of the catalog in wire form."""
        return [p.to_dict() for p in self._packages]

    async def append(self, package: Package, publish: PublishFn | None = None) -> None:
        async with self._lock:
            if package.id in self._by_id or any(
                p.filename == package.filename for p in self._packages
            ):
                raise ValueError(f"Duplicate package: {package.id}")

            updated = self._packages + [package]
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.store.save, updated)

            self._packages = updated
            self._by_id[package.id] = package
            logger.info("Cataloged package %s (%s %s)", package.id, package.name, package.version)
            if publish is not None:
                await publish(self.snapshot())
