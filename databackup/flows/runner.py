"""
Task Runner (Task/Object State Machine)
========================================

Drives one executor over an ordered worklist of subjects.

Per task:  WAITING → PROCESSING → {SUCCESS, FAILED}

Fresh run:
  1. Load the indexes and reconcile them against disk and device.
  2. Build one task per eligible subject (blacklist + selection filter).
  3. Process subjects strictly one after another.
  4. Save every touched index exactly once at the end.

Retry run (retry=True):
  Reuses the in-memory indexes. Only tasks currently FAILED are processed
  again; all other tasks keep their state and object snapshots untouched.

Progress counts completed tasks (success or failure) and increases only
after a task reached its terminal state. Cancellation is polled between
subjects and, through the executor, between objects; an interrupted task
goes back to WAITING.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from databackup.config import COVER_DATE, LOCAL_TZ, BackupSettings
from databackup.engine.archive import ArchivePipeline
from databackup.engine.executor import StepOutcome
from databackup.engine.scanner import ReconciliationScanner
from databackup.flows.monitor import RunMonitor
from databackup.index_store import IndexKind, IndexStore, MetadataIndex
from databackup.models.task import (
    ProcessObject,
    ProcessState,
    ProcessingTask,
    StatusEvent,
)

logger = logging.getLogger("databackup.flows.runner")


# =============================================================================
# Run result
# =============================================================================

@dataclass
class RunSummary:
    """Result of one run."""
    flow: str
    retry: bool = False
    total: int = 0
    progress: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    saved: dict[str, bool] = field(default_factory=dict)
    started_at: str = field(
        default_factory=lambda: datetime.now(LOCAL_TZ).isoformat()
    )
    finished_at: Optional[str] = None


# =============================================================================
# Runner base
# =============================================================================

class TaskRunner:
    """
    Base class of the four flows.

    Subclasses define:
      name           flow name ("restore-app", ...)
      kinds          indexes loaded by the runner
      read_only      kinds never written back (e.g. the blacklist)
      _reconcile()   reconciliation after the indexes are loaded
      _build_tasks() fresh worklist
      _new_objects() live object list reused for every task
      _process()     one subject, returns the executor outcome
      _complete()    index mutations once a task is terminal
    """

    name = "runner"
    kinds: tuple[IndexKind, ...] = ()
    read_only: tuple[IndexKind, ...] = (IndexKind.BLACKLIST,)

    def __init__(
        self,
        gateway,
        store: IndexStore,
        settings: BackupSettings,
        monitor: Optional[RunMonitor] = None,
    ):
        self._gateway = gateway
        self._store = store
        self._settings = settings
        self._monitor = monitor or RunMonitor()
        self._pipeline = ArchivePipeline(gateway, settings)
        self._scanner = ReconciliationScanner(gateway, settings)
        self.cancel_event = asyncio.Event()
        self.indexes: dict[IndexKind, MetadataIndex] = {}
        self.tasks: list[ProcessingTask] = []
        self.progress = 0
        self.run_date = ""
        self._live: list[ProcessObject] = self._new_objects()

    # =========================================================================
    # Public API
    # =========================================================================

    def cancel(self) -> None:
        """Requests cooperative cancellation of the current run."""
        logger.info("%s: cancellation requested", self.name)
        self.cancel_event.set()

    @property
    def has_failed_tasks(self) -> bool:
        return any(t.state == ProcessState.FAILED for t in self.tasks)

    async def run(self, retry: bool = False) -> RunSummary:
        """
        Runs the flow.

        Args:
            retry: True = only process tasks currently FAILED

        Returns:
            RunSummary
        """
        self.cancel_event.clear()
        summary = RunSummary(flow=self.name, retry=retry)

        logger.info("=" * 60)
        logger.info("  %s%s", self.name.upper(), " (retry)" if retry else "")
        logger.info("=" * 60)

        if not retry or not self.indexes:
            await self._load_indexes()
        logger.info("Global map check finished.")

        if retry:
            logger.info("Retrying.")
            self.progress = sum(1 for t in self.tasks if t.state == ProcessState.SUCCESS)
        else:
            self.run_date = self._new_run_date()
            self.tasks = self._build_tasks()
            self.progress = 0
        logger.info("Task added, size: %d.", len(self.tasks))

        summary.total = len(self.tasks)
        self._publish("run", state="started", retry=retry, total=summary.total)
        self._publish_progress()

        for task in self.tasks:
            if retry and task.state != ProcessState.FAILED:
                continue
            if self.cancel_event.is_set():
                summary.cancelled = True
                break

            task.state = ProcessState.PROCESSING
            self._publish("task", subject=task.subject, state=task.state.value)

            outcome = await self._process(task, self._live)
            task.objects = [obj.snapshot() for obj in self._live]

            if outcome.cancelled:
                task.state = ProcessState.WAITING
                self._publish("task", subject=task.subject, state=task.state.value)
                summary.cancelled = True
                logger.info("%s: cancelled during %s", self.name, task.subject)
                break

            task.state = ProcessState.SUCCESS if outcome.success else ProcessState.FAILED
            self._complete(task, outcome)
            self.progress += 1
            logger.info(
                "[%d/%d] %s: %s", self.progress, summary.total, task.subject, task.state.value,
            )
            self._publish("task", subject=task.subject, state=task.state.value)
            self._publish_progress()

        summary.saved = await self._save_indexes()
        summary.progress = self.progress
        summary.succeeded = sum(1 for t in self.tasks if t.state == ProcessState.SUCCESS)
        summary.failed = sum(1 for t in self.tasks if t.state == ProcessState.FAILED)
        summary.finished_at = datetime.now(LOCAL_TZ).isoformat()

        logger.info(
            "%s finished: %d ok, %d failed, %d total%s",
            self.name, summary.succeeded, summary.failed, summary.total,
            " (cancelled)" if summary.cancelled else "",
        )
        self._publish(
            "run", state="cancelled" if summary.cancelled else "finished",
            succeeded=summary.succeeded, failed=summary.failed, total=summary.total,
        )
        return summary

    # =========================================================================
    # Index lifecycle
    # =========================================================================

    async def _load_indexes(self) -> None:
        for kind in self.kinds:
            self.indexes[kind] = await self._store.load(kind)
        await self._reconcile()

    async def _save_indexes(self) -> dict[str, bool]:
        saved: dict[str, bool] = {}
        for kind, index in self.indexes.items():
            if kind in self.read_only:
                continue
            saved[kind.value] = await self._store.save(index)
        return saved

    def index(self, kind: IndexKind) -> MetadataIndex:
        return self.indexes[kind]

    def is_blacklisted(self, subject: str) -> bool:
        blacklist = self.indexes.get(IndexKind.BLACKLIST)
        return blacklist is not None and subject in blacklist

    def _new_run_date(self) -> str:
        if self._settings.is_cover:
            return COVER_DATE
        return datetime.now(LOCAL_TZ).strftime("%Y%m%d%H%M%S")

    # =========================================================================
    # Monitor
    # =========================================================================

    def _publish(self, kind: str, **fields) -> None:
        self._monitor.publish(kind, flow=self.name, **fields)

    def _publish_progress(self) -> None:
        self._publish("progress", progress=self.progress, total=len(self.tasks))

    def _on_object_event(self, task: ProcessingTask, obj: ProcessObject, event: StatusEvent) -> None:
        self._publish(
            "object", subject=task.subject, object=obj.type.value,
            status=event.status.value, detail=event.detail,
        )

    # =========================================================================
    # Subclass hooks
    # =========================================================================

    async def _reconcile(self) -> None:
        pass

    def _build_tasks(self) -> list[ProcessingTask]:
        raise NotImplementedError

    def _new_objects(self) -> list[ProcessObject]:
        raise NotImplementedError

    async def _process(self, task: ProcessingTask, objects: list[ProcessObject]) -> StepOutcome:
        raise NotImplementedError

    def _complete(self, task: ProcessingTask, outcome: StepOutcome) -> None:
        pass
