"""Package download with integrity check.

Bytes are streamed into ``<dest>.part`` while being hashed; only a file
whose SHA-256 and size match the install command is renamed into place.
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    """Raised when a package cannot be fetched or fails verification."""


def _local_name(package: dict) -> str:
    url_name = Path(httpx.URL(package["url"]).path).name
    return url_name or f"{package['id']}.bin"


def _expected_size(package: dict) -> int | None:
    value = package.get("sizeBytes")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise DownloadError(f"invalid sizeBytes: {value!r}") from None


async def download_package(
    package: dict,
    dest_dir: str | Path,
    client: httpx.AsyncClient | None = None,
    timeout: float = 300.0,
) -> Path:
    """Fetch ``package["url"]`` into *dest_dir* and verify it.

    *package* is the ``package`` block of an ``install_request``.
    Returns the path of the verified file.
    """
    expected_size = _expected_size(package)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / _local_name(package)
    part = dest.with_name(dest.name + ".part")

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    digest = hashlib.sha256()
    size = 0
    try:
        async with client.stream("GET", package["url"]) as resp:
            resp.raise_for_status()
            with open(part, "wb") as f:
                async for chunk in resp.aiter_bytes():
                    digest.update(chunk)
                    size += len(chunk)
                    f.write(chunk)
    except (httpx.HTTPError, OSError) as e:
        part.unlink(missing_ok=True)
        raise DownloadError(f"download failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if expected_size is not None and size != expected_size:
        part.unlink(missing_ok=True)
        raise DownloadError(f"size mismatch: expected {expected_size}, got {size}")

    actual = digest.hexdigest()
    if actual != str(package.get("sha256", "")).lower():
        part.unlink(missing_ok=True)
        raise DownloadError(f"sha256 mismatch: expected {package.get('sha256')}, got {actual}")

    os.replace(part, dest)
    logger.info("Downloaded %s (%d bytes, verified)", dest.name, size)
    return dest
