"""Configuration for the fleetpush agent."""

from __future__ import annotations

import getpass
import json
import logging
import socket
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class AgentConfig:
    """Agent configuration — loaded from config.json."""

    agent_id: str = ""
    server_url: str = "ws://localhost:8080/ws"
    token: str = ""
    hostname: str = ""
    user: str = ""

    # Downloads
    download_dir: str = "./downloads"
    download_timeout: float = 300.0

    # Reconnect backoff, seconds
    reconnect_delay: int = 2
    max_reconnect_delay: int = 60

    @classmethod
    def load(cls, path: str | Path) -> AgentConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dict(self.__dict__), f, indent=2)

    def fill_defaults(self) -> None:
        """Populate hostname/user from the machine when left empty."""
        if not self.hostname:
            self.hostname = socket.gethostname()
        if not self.user:
            try:
                self.user = getpass.getuser()
            except (KeyError, OSError):
                self.user = ""

    def generate_id(self) -> str:
        """Generate an agent ID from the hostname."""
        return f"agent-{socket.gethostname()}"
