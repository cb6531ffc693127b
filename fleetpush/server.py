"""fleetpush — coordination server.

Exposes:
  WS   /ws                     — agent / dashboard gateway
  POST /api/packages           — upload a package (multipart: file, name, version)
  GET  /api/packages           — catalog snapshot
  GET  /api/agents             — connected agents snapshot
  GET  /packages/<filename>    — stored package binaries
  GET  /health                 — liveness check

Start with::

    python -m fleetpush.server
    # or
    uvicorn fleetpush.server:create_app --factory --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.staticfiles import StaticFiles

from fleetpush import __version__
from fleetpush.catalog import PackageCatalog
from fleetpush.config import ServerConfig
from fleetpush.dispatch import Hub
from fleetpush.gateway import Gateway
from fleetpush.ingest import IngestError, IngestPipeline
from fleetpush.registry import AgentRegistry, DashboardSet
from fleetpush.store import JsonPackageStore

logger = logging.getLogger(__name__)

_COPY_CHUNK = 1024 * 1024

router = APIRouter()


def _hub(request: Request) -> Hub:
    return request.app.state.hub


def _spool_to_disk(src: BinaryIO, directory: Path) -> Path:
    """Copy an upload stream into a fresh temp file under *directory*."""
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".upload-", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as out:
            shutil.copyfileobj(src, out, _COPY_CHUNK)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return Path(tmp)


# ──────────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────────

@router.get("/health")
async def health(request: Request):
    hub = _hub(request)
    return {
        "status": "ok",
        "version": __version__,
        "agents": len(hub.agents),
        "dashboards": len(hub.dashboards),
        "packages": len(hub.catalog),
    }


@router.get("/api/packages")
async def list_packages(request: Request):
    return {"packages": _hub(request).catalog.snapshot()}


@router.get("/api/agents")
async def list_agents(request: Request):
    return {"agents": _hub(request).agents.snapshot()}


@router.post("/api/packages", status_code=201)
async def upload_package(
    request: Request,
    file: UploadFile | None = File(None),
    name: str | None = Form(None),
    version: str | None = Form(None),
):
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    hub = _hub(request)
    config: ServerConfig = request.app.state.config
    loop = asyncio.get_running_loop()
    temp_path: Path | None = None
    try:
        temp_path = await loop.run_in_executor(
            None, _spool_to_disk, file.file, config.incoming_dir
        )
        package = await hub.ingest(temp_path, file.filename, name, version)
    except IngestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OSError:
        logger.exception("Upload of %s failed", file.filename)
        raise HTTPException(status_code=500, detail="Failed to store package")
    finally:
        await file.close()
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)

    return package.to_dict()


# ──────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────

def create_app(config: ServerConfig | None = None) -> FastAPI:
    """Build the app with its own catalog and registries."""
    config = config or ServerConfig.from_env()
    config.ensure_dirs()

    catalog = PackageCatalog(JsonPackageStore(config.catalog_path))
    catalog.load()
    hub = Hub(
        catalog=catalog,
        agents=AgentRegistry(),
        dashboards=DashboardSet(),
        pipeline=IngestPipeline(config.packages_dir),
        public_url=config.public_url,
    )
    gateway = Gateway(hub, config.agent_token, send_queue_size=config.send_queue_size)

    app = FastAPI(title="fleetpush", version=__version__)
    app.state.config = config
    app.state.hub = hub
    app.state.gateway = gateway

    app.include_router(router)
    app.add_api_websocket_route("/ws", gateway.handle)
    app.mount("/packages", StaticFiles(directory=config.packages_dir), name="packages")
    return app


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    config = ServerConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting fleetpush server on %s:%d", config.host, config.port)
    uvicorn.run(
        "fleetpush.server:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
