"""pytest configuration for fleetpush tests."""

from __future__ import annotations

import pytest

from fleetpush.catalog import PackageCatalog
from fleetpush.dispatch import Hub
from fleetpush.ingest import IngestPipeline
from fleetpush.registry import AgentRegistry, DashboardSet
from fleetpush.store import JsonPackageStore


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeConnection:
    """Stand-in for :class:`fleetpush.connection.Connection`."""

    def __init__(self, is_open: bool = True) -> None:
        self.is_open = is_open
        self.sent: list[dict] = []

    def send(self, message: dict) -> bool:
        if not self.is_open:
            return False
        self.sent.append(message)
        return True

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == msg_type]


@pytest.fixture()
def make_upload(tmp_path):
    """Write bytes to a fresh temp file and return its path."""
    incoming = tmp_path / "incoming"
    incoming.mkdir()
    counter = {"n": 0}

    def _make(content: bytes = b"MZ\x90\x00payload") -> str:
        counter["n"] += 1
        path = incoming / f"upload-{counter['n']}.part"
        path.write_bytes(content)
        return str(path)

    return _make


@pytest.fixture()
def hub(tmp_path):
    catalog = PackageCatalog(JsonPackageStore(tmp_path / "packages.json"))
    return Hub(
        catalog=catalog,
        agents=AgentRegistry(),
        dashboards=DashboardSet(),
        pipeline=IngestPipeline(tmp_path / "packages"),
        public_url="http://files.local/",
    )


@pytest.fixture()
def make_conn():
    """Factory for fake connections: ``make_conn(is_open=True)``."""
    return FakeConnection
