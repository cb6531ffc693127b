"""Tests for the agent-side client code.

Covers the parts that run without a live server: config, URL building,
message routing, verified downloads and the install status sequence.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import signal
from pathlib import Path
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

PAYLOAD = b"MZ" + b"\x42" * 1000


def _package(content: bytes = PAYLOAD, **overrides) -> dict:
    pkg = {
        "id": "p1",
        "name": "Tool",
        "version": "1.0",
        "sha256": hashlib.sha256(content).hexdigest(),
        "sizeBytes": len(content),
        "url": "http://files.local/packages/p1_setup.exe",
        "typeHint": "exe",
    }
    pkg.update(overrides)
    return pkg


def _client_serving(content: bytes, status: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=content)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── Config tests ──────────────────────────────────────────────────


class TestAgentConfig:
    def test_defaults(self):
        from fleetpush_agent.config import AgentConfig

        cfg = AgentConfig()
        assert cfg.agent_id == ""
        assert cfg.server_url == "ws://localhost:8080/ws"
        assert cfg.reconnect_delay == 2
        assert cfg.max_reconnect_delay == 60

    def test_load_save(self, tmp_path):
        from fleetpush_agent.config import AgentConfig

        cfg = AgentConfig(
            agent_id="agent-1",
            server_url="ws://10.0.0.1:8080/ws",
            token="s3cret",
            download_dir=str(tmp_path / "dl"),
        )
        path = tmp_path / "config.json"
        cfg.save(path)

        loaded = AgentConfig.load(path)
        assert loaded == cfg

    def test_load_missing_file(self, tmp_path):
        from fleetpush_agent.config import AgentConfig

        cfg = AgentConfig.load(tmp_path / "nonexistent.json")
        assert cfg.agent_id == ""

    def test_load_ignores_unknown_keys(self, tmp_path):
        from fleetpush_agent.config import AgentConfig

        path = tmp_path / "config.json"
        path.write_text(json.dumps({"agent_id": "agent-x", "room": "kitchen"}))
        cfg = AgentConfig.load(path)
        assert cfg.agent_id == "agent-x"
        assert not hasattr(cfg, "room")

    def test_fill_defaults_keeps_explicit_values(self):
        from fleetpush_agent.config import AgentConfig

        cfg = AgentConfig(hostname="explicit", user="ops")
        cfg.fill_defaults()
        assert cfg.hostname == "explicit"
        assert cfg.user == "ops"

    def test_generate_id(self):
        import socket

        from fleetpush_agent.config import AgentConfig

        assert AgentConfig().generate_id() == f"agent-{socket.gethostname()}"


# ── WebSocket client tests ────────────────────────────────────────


class TestWSClient:
    def test_build_url(self):
        from fleetpush_agent.ws_client import build_url

        url = build_url("ws://srv:8080/ws", "s3 cret", "agent-1", "pc-1", "ops")
        parts = urlsplit(url)
        assert parts.netloc == "srv:8080"
        assert parts.path == "/ws"
        assert parse_qs(parts.query) == {
            "role": ["agent"],
            "token": ["s3 cret"],
            "id": ["agent-1"],
            "hostname": ["pc-1"],
            "user": ["ops"],
        }

    def test_build_url_omits_empty_identity(self):
        from fleetpush_agent.ws_client import build_url

        query = parse_qs(urlsplit(build_url("ws://srv/ws?x=1", "t")).query)
        assert query == {"x": ["1"], "role": ["agent"], "token": ["t"]}

    @pytest.mark.asyncio
    async def test_dispatch_routes_by_type(self):
        from fleetpush_agent.ws_client import AgentWSClient

        client = AgentWSClient("ws://localhost:8080/ws", "t", agent_id="a")
        handler = AsyncMock()
        client.on("install_request", handler)

        await client.dispatch(json.dumps({"type": "install_request", "package": {}}))
        await client.dispatch(json.dumps({"type": "other"}))
        await client.dispatch("not json")

        handler.assert_awaited_once_with({"type": "install_request", "package": {}})

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_escape(self):
        from fleetpush_agent.ws_client import AgentWSClient

        client = AgentWSClient("ws://localhost:8080/ws", "t")
        client.on("install_request", AsyncMock(side_effect=RuntimeError("boom")))
        await client.dispatch(json.dumps({"type": "install_request"}))

    @pytest.mark.asyncio
    async def test_send_status_frame(self):
        from fleetpush_agent.ws_client import AgentWSClient

        client = AgentWSClient("ws://localhost:8080/ws", "t")
        client._ws = AsyncMock()
        await client.send_status("installed", "Tool 1.0")
        client._ws.send.assert_awaited_once_with(
            json.dumps({"type": "status", "status": "installed", "detail": "Tool 1.0"})
        )

    def test_not_connected_initially(self):
        from fleetpush_agent.ws_client import AgentWSClient

        assert AgentWSClient("ws://localhost:8080/ws", "t").connected is False


# ── Download tests ────────────────────────────────────────────────


class TestDownload:
    @pytest.mark.asyncio
    async def test_verified_download(self, tmp_path):
        from fleetpush_agent.downloader import download_package

        async with _client_serving(PAYLOAD) as client:
            path = await download_package(_package(), tmp_path, client=client)

        assert path == tmp_path / "p1_setup.exe"
        assert path.read_bytes() == PAYLOAD
        assert not (tmp_path / "p1_setup.exe.part").exists()

    @pytest.mark.asyncio
    async def test_digest_mismatch(self, tmp_path):
        from fleetpush_agent.downloader import DownloadError, download_package

        tampered = PAYLOAD[:-1] + b"\x00"
        async with _client_serving(tampered) as client:
            with pytest.raises(DownloadError, match="sha256"):
                await download_package(_package(), tmp_path, client=client)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_size_mismatch(self, tmp_path):
        from fleetpush_agent.downloader import DownloadError, download_package

        async with _client_serving(PAYLOAD + b"extra") as client:
            with pytest.raises(DownloadError, match="size"):
                await download_package(_package(), tmp_path, client=client)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_invalid_size_rejected(self, tmp_path):
        from fleetpush_agent.downloader import DownloadError, download_package

        async with _client_serving(PAYLOAD) as client:
            with pytest.raises(DownloadError, match="sizeBytes"):
                await download_package(_package(sizeBytes="two"), tmp_path, client=client)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_http_error(self, tmp_path):
        from fleetpush_agent.downloader import DownloadError, download_package

        async with _client_serving(b"gone", status=404) as client:
            with pytest.raises(DownloadError):
                await download_package(_package(), tmp_path, client=client)
        assert list(tmp_path.iterdir()) == []


# ── Agent tests ───────────────────────────────────────────────────


class TestPackageAgent:
    def _agent(self, tmp_path, installer=None):
        from fleetpush_agent.agent import PackageAgent
        from fleetpush_agent.config import AgentConfig

        agent = PackageAgent(
            AgentConfig(agent_id="a", token="t", download_dir=str(tmp_path)),
            installer=installer,
        )
        agent.ws.send_status = AsyncMock()
        return agent

    @staticmethod
    def _statuses(agent) -> list[str]:
        return [c.args[0] for c in agent.ws.send_status.await_args_list]

    @pytest.mark.asyncio
    async def test_download_only(self, tmp_path, monkeypatch):
        from fleetpush_agent import agent as agent_mod

        monkeypatch.setattr(agent_mod, "download_package", AsyncMock(return_value=tmp_path / "f"))
        agent = self._agent(tmp_path)

        await agent.handle_install(_package())

        assert self._statuses(agent) == ["downloading", "downloaded"]

    @pytest.mark.asyncio
    async def test_with_installer(self, tmp_path, monkeypatch):
        from fleetpush_agent import agent as agent_mod

        stored = tmp_path / "p1_setup.exe"
        monkeypatch.setattr(agent_mod, "download_package", AsyncMock(return_value=stored))
        installer = AsyncMock()
        agent = self._agent(tmp_path, installer=installer)

        await agent.handle_install(_package())

        installer.assert_awaited_once_with(stored, _package())
        assert self._statuses(agent) == ["downloading", "downloaded", "installing", "installed"]

    @pytest.mark.asyncio
    async def test_download_failure_reported(self, tmp_path, monkeypatch):
        from fleetpush_agent import agent as agent_mod
        from fleetpush_agent.downloader import DownloadError

        monkeypatch.setattr(
            agent_mod, "download_package", AsyncMock(side_effect=DownloadError("sha256 mismatch"))
        )
        installer = AsyncMock()
        agent = self._agent(tmp_path, installer=installer)

        await agent.handle_install(_package())

        installer.assert_not_awaited()
        assert self._statuses(agent) == ["downloading", "failed"]
        assert "sha256" in agent.ws.send_status.await_args_list[-1].args[1]

    @pytest.mark.asyncio
    async def test_invalid_size_reported_as_failed(self, tmp_path):
        installer = AsyncMock()
        agent = self._agent(tmp_path / "downloads", installer=installer)

        await agent.handle_install(_package(sizeBytes="two"))

        installer.assert_not_awaited()
        assert self._statuses(agent) == ["downloading", "failed"]
        assert "sizeBytes" in agent.ws.send_status.await_args_list[-1].args[1]
        assert list((tmp_path / "downloads").glob("*.part")) == []

    @pytest.mark.asyncio
    async def test_installer_failure_reported(self, tmp_path, monkeypatch):
        from fleetpush_agent import agent as agent_mod

        monkeypatch.setattr(agent_mod, "download_package", AsyncMock(return_value=Path("x")))
        agent = self._agent(tmp_path, installer=AsyncMock(side_effect=RuntimeError("exit 1603")))

        await agent.handle_install(_package())

        assert self._statuses(agent)[-1] == "failed"

    @pytest.mark.asyncio
    async def test_request_without_package_ignored(self, tmp_path):
        agent = self._agent(tmp_path)
        await agent._on_install_request({"type": "install_request"})
        agent.ws.send_status.assert_not_awaited()


# ── Entry point ───────────────────────────────────────────────────


class _LifecycleAgent:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.cancelled = False
        self.stopped = False

    async def start(self):
        if self.error is not None:
            raise self.error
        os.kill(os.getpid(), signal.SIGTERM)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    async def stop(self):
        self.stopped = True


class TestRun:
    def test_signal_cancels_agent_and_stops(self):
        from fleetpush_agent.__main__ import run

        agent = _LifecycleAgent()
        run(agent)

        assert agent.cancelled is True
        assert agent.stopped is True

    def test_agent_errors_are_not_swallowed(self):
        from fleetpush_agent.__main__ import run

        agent = _LifecycleAgent(error=RuntimeError("boom"))
        with pytest.raises(RuntimeError, match="boom"):
            run(agent)
        assert agent.stopped is True
