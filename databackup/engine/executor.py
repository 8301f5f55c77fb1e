"""
Step Executor Base
===================

Runs the object steps of one subject in their fixed order.

  - Steps are dispatched through a table keyed by ObjectType.
  - Invisible objects are skipped.
  - The cancellation flag is polled before every object and once more
    after the last one; a set flag stops without touching the state of
    any object.
  - An unexpected exception inside one step is logged and turns that
    object into FAILED; it never escapes the step.

Subclasses fill `_handlers` and may override `_after_failure()` to
short-circuit the remaining objects.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from databackup.models.index import CompressionType, ObjectType
from databackup.models.task import (
    ProcessObject,
    ProcessState,
    ProcessStatus,
    ProcessingTask,
    StatusEvent,
)

logger = logging.getLogger("databackup.engine.executor")

# (task, object, event) → presentation side; must not block
ObjectSink = Callable[[ProcessingTask, ProcessObject, StatusEvent], None]
Emit = Callable[[StatusEvent], None]
Handler = Callable[[ProcessingTask, ProcessObject, Emit], Awaitable[bool]]


@dataclass
class StepOutcome:
    """Result of one subject."""
    success: bool = True
    cancelled: bool = False
    completed: list[ObjectType] = field(default_factory=list)
    # restore: security context found on the live path before extraction
    captured_contexts: dict[ObjectType, str] = field(default_factory=dict)
    # backup: archives written and measured source sizes
    archives: dict[ObjectType, CompressionType] = field(default_factory=dict)
    sizes: dict[ObjectType, int] = field(default_factory=dict)


class StepExecutor:
    """Shared object loop of the restore and backup executors."""

    def __init__(
        self,
        gateway,
        cancel_event: asyncio.Event,
        sink: Optional[ObjectSink] = None,
    ):
        self._gateway = gateway
        self._cancel = cancel_event
        self._sink = sink
        self._handlers: dict[ObjectType, Handler] = {}
        self._outcome = StepOutcome()

    def _emitter(self, task: ProcessingTask, obj: ProcessObject) -> Emit:
        def emit(event: StatusEvent) -> None:
            obj.apply(event)
            if event.status == ProcessStatus.ERROR:
                logger.warning("[%s/%s] %s", task.subject, obj.type.value, event.detail)
            if self._sink is not None:
                self._sink(task, obj, event)
        return emit

    async def _run_objects(self, task: ProcessingTask, objects: list[ProcessObject]) -> StepOutcome:
        outcome = self._outcome = StepOutcome()

        for position, obj in enumerate(objects):
            if self._cancel.is_set():
                outcome.cancelled = True
                return outcome
            if not obj.visible:
                continue

            obj.state = ProcessState.PROCESSING
            emit = self._emitter(task, obj)
            handler = self._handlers[obj.type]
            try:
                ok = await handler(task, obj, emit)
            except Exception as e:
                logger.error(
                    "Step %s of %s crashed: %s", obj.type.value, task.subject, e, exc_info=True,
                )
                emit(StatusEvent(ProcessStatus.ERROR, str(e)))
                ok = False

            obj.state = ProcessState.SUCCESS if ok else ProcessState.FAILED
            if ok:
                outcome.completed.append(obj.type)
                continue

            outcome.success = False
            if self._after_failure(task, obj, objects[position + 1:]):
                break

        if self._cancel.is_set():
            outcome.cancelled = True
        return outcome

    def _after_failure(
        self,
        task: ProcessingTask,
        failed: ProcessObject,
        remaining: list[ProcessObject],
    ) -> bool:
        """Returns True to stop the subject after `failed`."""
        return False
