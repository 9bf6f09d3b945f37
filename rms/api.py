"""
Local HTTP control surface.

A small FastAPI app for checking on the server and running the operator
commands (save, restart, stop, raw console commands) without a terminal.
It is served by uvicorn on the same event loop as the orchestrator and is
disabled unless api.enabled is set.
"""

import asyncio
import contextlib
import logging

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from . import __version__
from .errors import ServerNotRunningError
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class CommandRequest(BaseModel):
    command: str = Field(..., min_length=1, description="Console command sent to the server")


def create_app(orchestrator: Orchestrator) -> FastAPI:
    """Build the control app for an orchestrator."""
    app = FastAPI(
        title="RMS",
        description="RAM-cached Minecraft server supervisor",
        version=__version__,
    )
    supervisor = orchestrator.supervisor
    background: set[asyncio.Task] = set()

    @app.get("/api/status")
    async def get_status():
        """Server, cache volume and quota overview."""
        return orchestrator.status()

    @app.post("/api/save")
    async def save_world():
        """Save the world and sync it to the backup directory."""
        try:
            await supervisor.save()
        except ServerNotRunningError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"status": "saved"}

    @app.post("/api/restart")
    async def restart_server():
        """Restart the server without ending the run."""
        if orchestrator.restarting:
            raise HTTPException(status_code=409, detail="A restart is already in progress")
        try:
            await supervisor.restart()
        except ServerNotRunningError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"status": "restarted", "pid": supervisor.pid}

    @app.post("/api/stop")
    async def stop_server():
        """Stop the server, which also ends the run."""
        if not supervisor.is_running:
            raise HTTPException(status_code=409, detail="Minecraft server is not running")
        # Reply before the run (and this server) shuts down.
        task = asyncio.create_task(orchestrator.stop())
        background.add(task)
        task.add_done_callback(background.discard)
        return {"status": "stopping"}

    @app.post("/api/command")
    async def send_command(data: CommandRequest):
        """Send a raw console command to the server."""
        if not supervisor.send_command(data.command):
            raise HTTPException(status_code=409, detail="Minecraft server is not running")
        return {"status": "sent", "command": data.command}

    @app.get("/api/logs")
    async def get_logs(lines: int = Query(100, ge=1, le=1000)):
        """Get recent log entries from the log file, if one is configured."""
        log_file = orchestrator.config.logging.file
        if not log_file:
            return {"lines": [], "total": 0}
        try:
            with open(log_file, "r") as f:
                all_lines = f.readlines()
                return {"lines": all_lines[-lines:], "total": len(all_lines)}
        except FileNotFoundError:
            return {"lines": [], "total": 0}

    return app


class ControlServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the supervisor."""

    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


async def serve_api(orchestrator: Orchestrator):
    """Serve the control app until cancelled."""
    api = orchestrator.config.api
    server = ControlServer(
        uvicorn.Config(
            create_app(orchestrator),
            host=api.host,
            port=api.port,
            log_level="warning",
        )
    )
    logger.info(f"Control API listening on http://{api.host}:{api.port}")
    await server.serve()
