"""Hashing pipeline: turns a finished upload into a catalog record.

The temp file is renamed into the package directory under
``<id>_<sanitised name>`` and then hashed by streaming its bytes.  The
blocking work runs in the default executor so the event loop (and the
registries it guards) keeps serving connections.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import uuid
from pathlib import Path

from fleetpush.models import Package, utcnow

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]")


class IngestError(Exception):
    """Raised when an upload cannot be turned into a package."""


def sanitize_filename(original: str) -> str:
    """Replace every character outside ``[A-Za-z0-9._-]`` with ``_``."""
    # Only the last path component counts; "..\\x" and "a/b" lose their dirs.
    base = re.split(r"[\\/]", original or "")[-1]
    safe = _UNSAFE_RE.sub("_", base).strip(".")
    return safe or "package"


def type_hint_for(filename: str) -> str:
    """Installer type derived from the lowercase extension, e.g. ``exe``."""
    suffix = Path(filename).suffix.lower()
    return suffix[1:] if suffix else ""


def default_name(original: str) -> str:
    base = re.split(r"[\\/]", original or "")[-1]
    stem = Path(base).stem if base else ""
    return stem or "package"


def sha256_file(path: str | Path) -> str:
    """Hex SHA-256 of a file, read in fixed-size chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _move_and_hash(src: Path, dest: Path) -> tuple[str, int]:
    os.replace(src, dest)
    try:
        return sha256_file(dest), dest.stat().st_size
    except OSError:
        dest.unlink(missing_ok=True)
        raise


class IngestPipeline:
    """Moves uploads into ``packages_dir`` and builds their records."""

    def __init__(self, packages_dir: str | Path) -> None:
        self.packages_dir = Path(packages_dir)

    def path_for(self, package: Package) -> Path:
        return self.packages_dir / package.filename

    async def ingest(
        self,
        temp_path: str | Path,
        original_filename: str,
        name: str | None = None,
        version: str | None = None,
    ) -> Package:
        """Store *temp_path* and return its (not yet cataloged) record.

        Raises :class:`IngestError` for a missing original filename and
        ``OSError`` for any failure while moving or hashing.
        """
        if not original_filename:
            raise IngestError("original filename is required")

        package_id = str(uuid.uuid4())
        safe_name = sanitize_filename(original_filename)
        filename = f"{package_id}_{safe_name}"
        dest = self.packages_dir / filename

        self.packages_dir.mkdir(parents=True, exist_ok=True)
        loop = asyncio.get_running_loop()
        sha256, size = await loop.run_in_executor(
            None, _move_and_hash, Path(temp_path), dest
        )

        package = Package(
            id=package_id,
            name=(name or "").strip() or default_name(original_filename),
            version=(version or "").strip(),
            filename=filename,
            size_bytes=size,
            sha256=sha256,
            created_at=utcnow().isoformat(),
            type_hint=type_hint_for(safe_name),
        )
        logger.info(
            "Stored %s (%d bytes, sha256 %s)", filename, size, sha256[:12]
        )
        return package

    def discard(self, package: Package) -> None:
        """Remove the stored binary of a package that never got cataloged."""
        try:
            self.path_for(package).unlink(missing_ok=True)
        except OSError:
            logger.exception("Failed to remove orphaned %s", package.filename)
