"""
Control API
============

REST endpoints to start, cancel and observe the backup/restore flows.

Endpoints:
  POST /api/control/cancel        — sets the cancellation flag of the running flow
  GET  /api/control/status        — running flag, progress and task states
  GET  /api/control/events        — monitor history (last 500 events)
  POST /api/control/{flow}        — starts a flow as BackgroundTask
                                    (backup-app | restore-app | backup-media | restore-media)

Only one flow runs at a time (409 otherwise). A retry run reuses the
runner of the previous run of the same flow and processes its FAILED
tasks only (409 if there are none).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from databackup.config import LOCAL_TZ, BackupSettings, create_gateway
from databackup.flows import FLOWS, RunMonitor, TaskRunner
from databackup.index_store import IndexStore

logger = logging.getLogger("databackup.api.control")

router = APIRouter(prefix="/api/control", tags=["Control"])


# =============================================================================
# Errors
# =============================================================================

class RunInProgressError(RuntimeError):
    """Another flow is still running."""


class NothingToRetryError(RuntimeError):
    """Retry requested but the previous run left no FAILED task."""


# =============================================================================
# Flow State
# =============================================================================

@dataclass
class FlowState:
    """State of the current (or last) run."""
    running: bool = False
    flow: str = ""
    retry: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[dict] = None
    error: Optional[str] = None


class RunController:
    """
    Owns one runner per flow and serializes their runs.

    Runners are kept between runs so a retry can see the task list and
    the in-memory indexes of the previous run.
    """

    def __init__(
        self,
        gateway_factory: Callable = create_gateway,
        settings: Optional[BackupSettings] = None,
        monitor: Optional[RunMonitor] = None,
    ):
        self._gateway_factory = gateway_factory
        self._gateway = None
        self.settings = settings or BackupSettings.from_env()
        self.monitor = monitor or RunMonitor()
        self.runners: dict[str, TaskRunner] = {}
        self.state = FlowState()
        self._lock = asyncio.Lock()

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = self._gateway_factory()
        return self._gateway

    @property
    def store(self) -> IndexStore:
        return IndexStore(self.gateway, self.settings)

    def runner(self, flow: str) -> TaskRunner:
        """
        Returns the (cached) runner of a flow.

        Raises:
            KeyError: unknown flow name
        """
        if flow not in FLOWS:
            raise KeyError(flow)
        if flow not in self.runners:
            self.runners[flow] = FLOWS[flow](
                self.gateway, self.store, self.settings, self.monitor,
            )
        return self.runners[flow]

    def start(self, flow: str, retry: bool = False) -> TaskRunner:
        """
        Claims the run slot for a flow.

        Raises:
            KeyError: unknown flow name
            RunInProgressError: another run is active
            NothingToRetryError: retry without FAILED tasks
        """
        runner = self.runner(flow)
        if self.state.running:
            raise RunInProgressError(
                f"Flow '{self.state.flow}' running since {self.state.started_at}"
            )
        if retry and not runner.has_failed_tasks:
            raise NothingToRetryError(f"Flow '{flow}' has no failed tasks")

        self.state = FlowState(
            running=True,
            flow=flow,
            retry=retry,
            started_at=datetime.now(LOCAL_TZ).isoformat(),
        )
        return runner

    async def execute(self, runner: TaskRunner, retry: bool = False) -> None:
        """Runs a claimed flow to the end and records the result."""
        async with self._lock:
            try:
                summary = await runner.run(retry=retry)
                self.state.result = asdict(summary)
            except Exception as e:
                logger.error("Flow %s crashed: %s", runner.name, e, exc_info=True)
                self.state.error = str(e)
                self.state.result = {"success": False, "error": str(e)}
            finally:
                self.state.running = False
                self.state.finished_at = datetime.now(LOCAL_TZ).isoformat()

    def cancel(self) -> bool:
        """Requests cancellation of the running flow. False if idle or no runner exists."""
        runner = self.runners.get(self.state.flow) if self.state.running else None
        if runner is None:
            return False
        runner.cancel()
        return True

    def status(self) -> dict:
        runner = self.runners.get(self.state.flow)
        return {
            **asdict(self.state),
            "progress": runner.progress if runner else 0,
            "total": len(runner.tasks) if runner else 0,
            "tasks": [t.to_dict() for t in runner.tasks] if runner else [],
        }


_controller: Optional[RunController] = None


def get_controller() -> RunController:
    """FastAPI dependency (overridden in tests)."""
    global _controller
    if _controller is None:
        _controller = RunController()
    return _controller


# =============================================================================
# Request Models
# =============================================================================

class RunRequest(BaseModel):
    """Request body to start a flow."""
    retry: bool = Field(
        default=False,
        description="Only process the FAILED tasks of the previous run",
    )


# =============================================================================
# POST /api/control/cancel
# =============================================================================

@router.post("/cancel")
async def cancel_flow(controller: RunController = Depends(get_controller)):
    """Cooperative cancel: the current object finishes, the rest is skipped."""
    was_running = controller.cancel()
    return {
        "success": True,
        "was_running": was_running,
        "flow": controller.state.flow if was_running else None,
    }


# =============================================================================
# GET /api/control/status
# =============================================================================

@router.get("/status")
async def flow_status(controller: RunController = Depends(get_controller)):
    return controller.status()


@router.get("/events")
async def flow_events(controller: RunController = Depends(get_controller)):
    """History of the run monitor."""
    return {"events": controller.monitor.get_history()}


# =============================================================================
# POST /api/control/{flow}
# =============================================================================

@router.post("/{flow}")
async def start_flow(
    flow: str,
    background_tasks: BackgroundTasks,
    req: Optional[RunRequest] = None,
    controller: RunController = Depends(get_controller),
):
    """
    Starts a flow in the background.

    Status via GET /api/control/status, live events via WS /ws/events.
    """
    retry = req.retry if req else False
    try:
        runner = controller.start(flow, retry=retry)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown flow '{flow}'")
    except (RunInProgressError, NothingToRetryError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(controller.execute, runner, retry)
    logger.info("Flow %s started%s", flow, " (retry)" if retry else "")

    return {
        "success": True,
        "message": f"Flow '{flow}' started",
        "flow": flow,
        "retry": retry,
        "started_at": controller.state.started_at,
    }
