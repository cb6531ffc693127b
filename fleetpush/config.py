"""Server configuration for fleetpush.

All settings come from environment variables and are read once into a
:class:`ServerConfig`.  Invalid integers fall back to their defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_AGENT_TOKEN = "fleetpush-change-me"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        logger.warning("Invalid integer for %s, using %d", name, default)
        return default


@dataclass
class ServerConfig:
    """Runtime settings for the coordination server."""

    host: str = "0.0.0.0"
    port: int = 8080
    agent_token: str = DEFAULT_AGENT_TOKEN
    data_dir: Path = Path("./data")
    public_url: str = "http://localhost:8080"
    send_queue_size: int = 256
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> ServerConfig:
        config = cls(
            host=os.environ.get("FLEETPUSH_HOST", "0.0.0.0"),
            port=_env_int("FLEETPUSH_PORT", 8080),
            agent_token=os.environ.get("FLEETPUSH_AGENT_TOKEN", DEFAULT_AGENT_TOKEN),
            data_dir=Path(os.environ.get("FLEETPUSH_DATA_DIR", "./data")),
            public_url=os.environ.get("FLEETPUSH_PUBLIC_URL", "http://localhost:8080"),
            send_queue_size=_env_int("FLEETPUSH_SEND_QUEUE", 256),
            log_level=os.environ.get("FLEETPUSH_LOG_LEVEL", "INFO").upper(),
        )
        if config.agent_token == DEFAULT_AGENT_TOKEN:
            logger.warning("FLEETPUSH_AGENT_TOKEN not set, using the default agent secret")
        return config

    @property
    def packages_dir(self) -> Path:
        """Directory holding stored package binaries."""
        return Path(self.data_dir) / "packages"

    @property
    def catalog_path(self) -> Path:
        """JSON file persisting the package catalog."""
        return Path(self.data_dir) / "packages.json"

    @property
    def incoming_dir(self) -> Path:
        """Upload staging area, on the same filesystem as ``packages_dir``."""
        return Path(self.data_dir) / "incoming"

    def ensure_dirs(self) -> None:
        self.packages_dir.mkdir(parents=True, exist_ok=True)
        self.incoming_dir.mkdir(parents=True, exist_ok=True)
