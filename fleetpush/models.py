"""Data model shared by the fleetpush core.

``Package`` and ``AgentRecord`` are plain dataclasses; the wire format uses
camelCase keys.  Inbound WebSocket messages are validated with pydantic so
that malformed payloads can be recognised and dropped in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Catalog ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Package:
    """One installable artifact in the catalog.  Immutable once ingested."""

    id: str
    name: str
    version: str
    filename: str
    size_bytes: int
    sha256: str
    created_at: str
    type_hint: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "filename": self.filename,
            "sizeBytes": self.size_bytes,
            "sha256": self.sha256,
            "createdAt": self.created_at,
            "typeHint": self.type_hint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Package:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            version=str(data.get("version", "")),
            filename=str(data["filename"]),
            size_bytes=int(data.get("sizeBytes", 0)),
            sha256=str(data["sha256"]),
            created_at=str(data.get("createdAt", "")),
            type_hint=str(data.get("typeHint", "")),
        )

    def command_payload(self, url: str) -> dict[str, Any]:
        """Package block of a per-agent ``install_request`` command."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "sha256": self.sha256,
            "sizeBytes": self.size_bytes,
            "url": url,
            "typeHint": self.type_hint,
        }


# ── Agents ────────────────────────────────────────────────────────


@dataclass
class AgentRecord:
    """A live agent session.  ``connection`` never leaves the core."""

    id: str
    hostname: str
    user: str
    connection: Any = field(repr=False, compare=False)
    last_seen: datetime = field(default_factory=utcnow)

    def public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "user": self.user,
            "lastSeen": self.last_seen.isoformat(),
        }


# ── Inbound messages ──────────────────────────────────────────────


class InstallRequestMessage(BaseModel):
    """Dashboard → server: push ``packageId`` to ``targetAgentIds``."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = "install_request"
    package_id: str = Field(alias="packageId")
    target_agent_ids: list[str] = Field(alias="targetAgentIds")


class AgentStatusMessage(BaseModel):
    """Agent → server: free-form status code with optional detail."""

    type: str = "status"
    status: str | int
    detail: str | None = None
