"""Durable package catalog backed by a single JSON file.

The file holds a JSON array of package records.  ``save`` writes the whole
catalog to a sibling temp file and renames it over the target so readers
never see a half-written catalog.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from fleetpush.models import Package

logger = logging.getLogger(__name__)


class JsonPackageStore:
    """``load() -> list[Package]`` / ``save(list[Package])`` over a JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> list[Package]:
        if not self.path.exists():
            logger.info("No catalog at %s, starting empty", self.path)
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed to read catalog %s, starting empty", self.path)
            return []
        if not isinstance(data, list):
            logger.error("Catalog %s is not a JSON array, starting empty", self.path)
            return []

        packages: list[Package] = []
        for entry in data:
            try:
                packages.append(Package.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping invalid catalog entry: %r", entry)
        return packages

    def save(self, packages: list[Package]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self.path.parent, prefix=".packages-", suffix=".json.tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump([p.to_dict() for p in packages], f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
