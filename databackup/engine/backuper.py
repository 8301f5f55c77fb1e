"""
Backup Step Executor
=====================

Archives one subject into one snapshot directory.

  APP      resolve the APK directory (`pm path`), archive its content
  USER…OBB archive `<per-user root>/<package>` if it exists
  MEDIA    archive the folder itself

Failures never stop sibling objects. Source sizes measured on the way
are reported so the next Cover run can skip unchanged objects.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

from databackup.config import BackupSettings, user_target
from databackup.engine.archive import ArchivePipeline
from databackup.engine.executor import Emit, ObjectSink, StepExecutor, StepOutcome
from databackup.models.index import (
    AppBackupRecord,
    MediaBackupRecord,
    ObjectType,
)
from databackup.models.task import (
    ProcessObject,
    ProcessStatus,
    ProcessingTask,
    StatusEvent,
)

logger = logging.getLogger("databackup.engine.backuper")


class BackupExecutor(StepExecutor):
    """
    Usage:
        executor = BackupExecutor(gateway, pipeline, settings, cancel_event, sink)
        await executor.prepare(task.objects, task)
        outcome = await executor.run(task, task.objects, record, output_dir)
    """

    def __init__(
        self,
        gateway,
        pipeline: ArchivePipeline,
        settings: BackupSettings,
        cancel_event: asyncio.Event,
        sink: Optional[ObjectSink] = None,
    ):
        super().__init__(gateway, cancel_event, sink)
        self._pipeline = pipeline
        self._settings = settings
        self._record: Union[AppBackupRecord, MediaBackupRecord, None] = None
        self._output_dir = ""
        self._handlers = {
            ObjectType.APP: self._backup_app,
            ObjectType.USER: self._backup_data,
            ObjectType.USER_DE: self._backup_data,
            ObjectType.DATA: self._backup_data,
            ObjectType.OBB: self._backup_data,
            ObjectType.MEDIA: self._backup_media,
        }

    async def prepare(self, objects: list[ProcessObject], task: ProcessingTask) -> None:
        """Resets the objects; data objects are visible only if their source exists."""
        user = self._settings.backup_user
        for obj in objects:
            obj.reset()
            if obj.type == ObjectType.APP:
                obj.visible = task.select_app
            elif obj.type == ObjectType.MEDIA:
                obj.visible = task.select_data
            elif task.select_data:
                source = f"{user_target(obj.type.value, user)}/{task.subject}"
                obj.visible = await self._gateway.exists(source)

    async def run(
        self,
        task: ProcessingTask,
        objects: list[ProcessObject],
        record: Union[AppBackupRecord, MediaBackupRecord],
        output_dir: str,
    ) -> StepOutcome:
        self._record = record
        self._output_dir = output_dir
        logger.info("Backing up %s into %s", task.subject, output_dir)
        return await self._run_objects(task, objects)

    # =========================================================================
    # Steps
    # =========================================================================

    async def _compress(
        self,
        object_type: ObjectType,
        source: str,
        expected: Optional[int],
        emit: Emit,
    ) -> bool:
        result = await self._pipeline.compress(
            object_type, source, self._output_dir, expected_size=expected, on_event=emit,
        )
        if result.size is not None:
            self._outcome.sizes[object_type] = result.size
        if result.success:
            self._outcome.archives[object_type] = self._settings.compression_type
        return result.success

    async def _backup_app(self, task: ProcessingTask, obj: ProcessObject, emit: Emit) -> bool:
        package = task.subject
        found, apk_dir = await self._gateway.get_apk_path(package, self._settings.backup_user)
        if not found:
            emit(StatusEvent(ProcessStatus.ERROR, f"Failed to get {package} APK path."))
            return False
        logger.info("%s APK path: %s.", package, apk_dir)
        expected = self._record.sizes.get(ObjectType.APP.value)
        return await self._compress(ObjectType.APP, apk_dir, expected, emit)

    async def _backup_data(self, task: ProcessingTask, obj: ProcessObject, emit: Emit) -> bool:
        source = f"{user_target(obj.type.value, self._settings.backup_user)}/{task.subject}"
        expected = self._record.sizes.get(obj.type.value)
        return await self._compress(obj.type, source, expected, emit)

    async def _backup_media(self, task: ProcessingTask, obj: ProcessObject, emit: Emit) -> bool:
        expected = self._record.size or None
        return await self._compress(ObjectType.MEDIA, self._record.path, expected, emit)
