"""
DataBackup FastAPI Entrypoint
==============================

Starts the orchestrator with:
  - Logging (console + rotating file, LOCAL_TZ timestamps)
  - API routers (Control, Blacklist)
  - WebSocket (live run events)

Start:
    uvicorn databackup.main:app --host 0.0.0.0 --port 8000

Or:
    python -m databackup.main
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import AsyncGenerator

from fastapi import FastAPI, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from databackup.config import (
    API_HOST,
    API_PORT,
    API_TITLE,
    API_VERSION,
    EXECUTION_MODE,
    LOCAL_TZ,
    LOG_FILE,
)

# =============================================================================
# Logging Setup (before all other module imports)
# =============================================================================


class _LocalTzFormatter(logging.Formatter):
    """Log formatter rendering timestamps in LOCAL_TZ."""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        ct = datetime.fromtimestamp(record.created, tz=LOCAL_TZ)
        if datefmt:
            return ct.strftime(datefmt)
        return ct.strftime("%Y-%m-%d %H:%M:%S")


_console_handler = logging.StreamHandler()
_console_handler.setFormatter(
    _LocalTzFormatter(
        fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
)
logging.root.addHandler(_console_handler)
logging.root.setLevel(logging.INFO)

# Persistent log: 10 MB per file, 3 backups, DEBUG level (includes SHELL_IN/OUT)
_file_handler = RotatingFileHandler(
    str(LOG_FILE),
    maxBytes=10_000_000,
    backupCount=3,
    encoding="utf-8",
)
_file_handler.setFormatter(
    _LocalTzFormatter(
        fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
)
_file_handler.setLevel(logging.DEBUG)
logging.root.addHandler(_file_handler)

logger = logging.getLogger("databackup.main")

from databackup.api.control import RunController, get_controller  # noqa: E402


def _controller() -> RunController:
    """Controller in use (honours dependency overrides)."""
    return app.dependency_overrides.get(get_controller, get_controller)()


# =============================================================================
# Lifespan (Startup / Shutdown)
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    controller = _controller()

    logger.info("=" * 60)
    logger.info("  DataBackup v%s", API_VERSION)
    logger.info("  Mode: %s", EXECUTION_MODE)
    logger.info("  Backup root: %s", controller.settings.backup_root)
    logger.info("  API: http://%s:%d", API_HOST, API_PORT)
    logger.info("=" * 60)

    yield

    if controller.state.running:
        logger.info("Shutdown: cancelling %s", controller.state.flow)
        controller.cancel()
    logger.info("DataBackup stopped.")


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    description="Backup and restore of Android apps and media folders on a rooted device.",
    lifespan=lifespan,
)

from databackup.api.blacklist import router as blacklist_router  # noqa: E402
from databackup.api.control import router as control_router  # noqa: E402

app.include_router(control_router)
app.include_router(blacklist_router)


# =============================================================================
# WebSocket /ws/events
# =============================================================================

@app.websocket("/ws/events")
async def ws_events_endpoint(ws: WebSocket):
    """
    Live run events.

    On connect: sends the monitor history.
    Afterwards: every new event is pushed as soon as it is published.
    The client may send "ping" (answered with a pong event).
    """
    monitor = _controller().monitor

    await ws.accept()
    logger.info("WebSocket client connected: %s", ws.client)

    for entry in monitor.get_history():
        await ws.send_text(json.dumps(entry, ensure_ascii=False))

    queue = monitor.subscribe()
    forwarder = asyncio.create_task(_forward_events(ws, queue))
    try:
        while True:
            data = await ws.receive_text()
            if data == "ping":
                await ws.send_text(json.dumps({"kind": "pong"}))
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected: %s", ws.client)
    finally:
        forwarder.cancel()
        monitor.unsubscribe(queue)


async def _forward_events(ws: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        entry = await queue.get()
        try:
            await ws.send_text(json.dumps(entry, ensure_ascii=False))
        except Exception as e:
            logger.debug("WebSocket send failed: %s", e)
            return


# =============================================================================
# Health Check
# =============================================================================

@app.get("/api/health", tags=["System"])
async def health_check(controller: RunController = Depends(get_controller)):
    """Health check: shell transport reachable and root available."""
    try:
        client = controller.gateway.shell_client
        connected = await client.is_connected()
        root = await client.has_root() if connected else False
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": str(e)},
        )

    return {
        "status": "healthy" if connected and root else "degraded",
        "mode": EXECUTION_MODE,
        "connected": connected,
        "root": root,
        "running": controller.state.running,
    }


# =============================================================================
# Global Exception Handler
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Returns unhandled exceptions as clean JSON."""
    logger.error("Unhandled exception on %s: %s", request.url, exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "detail": str(exc),
        },
    )


# =============================================================================
# Direct Execution
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "databackup.main:app",
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
