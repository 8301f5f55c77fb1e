"""
Media Flows
============

BackupMediaFlow:
  Index:  mediaBackupMap (default folders + sizes), mediaRestoreMap
  Tasks:  folders with select_data
  Done:   records the source size, registers the snapshot

RestoreMediaFlow:
  Index:  mediaRestoreMap (reconciled against <root>/media)
  Tasks:  folders whose current snapshot is selected
  Done:   clears select_data of the restored snapshot
"""

from __future__ import annotations

import logging
from typing import Optional

from databackup.engine.backuper import BackupExecutor
from databackup.engine.executor import StepOutcome
from databackup.engine.restorer import RestoreExecutor
from databackup.flows.runner import TaskRunner
from databackup.index_store import IndexKind
from databackup.models.index import (
    MediaBackupRecord,
    MediaRestoreRecord,
    MediaSnapshot,
    ObjectType,
)
from databackup.models.task import (
    ProcessObject,
    ProcessingTask,
    new_media_objects,
)

logger = logging.getLogger("databackup.flows.media")


class BackupMediaFlow(TaskRunner):
    """Backs up every selected media folder."""

    name = "backup-media"
    kinds = (IndexKind.MEDIA_BACKUP, IndexKind.MEDIA_RESTORE)

    def __init__(self, gateway, store, settings, monitor=None):
        super().__init__(gateway, store, settings, monitor)
        self._executor = BackupExecutor(
            gateway, self._pipeline, settings, self.cancel_event, self._on_object_event,
        )

    def _new_objects(self) -> list[ProcessObject]:
        return new_media_objects()

    async def _reconcile(self) -> None:
        await self._scanner.refresh_media_backup(self.index(IndexKind.MEDIA_BACKUP))
        await self._scanner.scan_media_restore(self.index(IndexKind.MEDIA_RESTORE))

    def _build_tasks(self) -> list[ProcessingTask]:
        return [
            ProcessingTask(
                subject=key,
                display_name=record.name,
                select_data=True,
                snapshot_date=self.run_date,
                target_path=record.path,
            )
            for key, record in sorted(self.index(IndexKind.MEDIA_BACKUP).items())
            if record.select_data
        ]

    async def _process(self, task: ProcessingTask, objects: list[ProcessObject]) -> StepOutcome:
        record: Optional[MediaBackupRecord] = self.index(IndexKind.MEDIA_BACKUP).get(task.subject)
        if record is None:
            for obj in objects:
                obj.reset()
            return StepOutcome(success=False)
        output_dir = f"{self._settings.media_root}/{task.subject}/{task.snapshot_date}"
        await self._executor.prepare(objects, task)
        return await self._executor.run(task, objects, record, output_dir)

    def _complete(self, task: ProcessingTask, outcome: StepOutcome) -> None:
        record: MediaBackupRecord = self.index(IndexKind.MEDIA_BACKUP).get(task.subject)
        if not outcome.success:
            return
        if ObjectType.MEDIA in outcome.sizes:
            record.size = outcome.sizes[ObjectType.MEDIA]
        record.last_backup = task.snapshot_date

        compression = outcome.archives.get(ObjectType.MEDIA)
        if compression is None:
            return

        def update(restore: Optional[MediaRestoreRecord]) -> MediaRestoreRecord:
            if restore is None:
                restore = MediaRestoreRecord(name=record.name, path=record.path)
            snapshot = restore.snapshot_for(task.snapshot_date)
            if snapshot is None:
                snapshot = MediaSnapshot(date=task.snapshot_date)
                restore.snapshots.append(snapshot)
            snapshot.observe(compression)
            restore.clamp_cursor()
            return restore

        self.index(IndexKind.MEDIA_RESTORE).upsert(task.subject, update)


class RestoreMediaFlow(TaskRunner):
    """Restores the selected snapshot of every selected media folder."""

    name = "restore-media"
    kinds = (IndexKind.MEDIA_RESTORE,)

    def __init__(self, gateway, store, settings, monitor=None):
        super().__init__(gateway, store, settings, monitor)
        self._executor = RestoreExecutor(
            gateway, self._pipeline, settings, self.cancel_event, self._on_object_event,
        )

    def _new_objects(self) -> list[ProcessObject]:
        return new_media_objects()

    async def _reconcile(self) -> None:
        await self._scanner.scan_media_restore(self.index(IndexKind.MEDIA_RESTORE))

    def _build_tasks(self) -> list[ProcessingTask]:
        return [
            ProcessingTask(
                subject=key,
                display_name=record.name,
                select_data=True,
                snapshot_date=record.current.date,
                target_path=record.path,
            )
            for key, record in sorted(self.index(IndexKind.MEDIA_RESTORE).items())
            if record.current is not None and record.select_data
        ]

    def _snapshot(self, task: ProcessingTask) -> Optional[MediaSnapshot]:
        record: Optional[MediaRestoreRecord] = self.index(IndexKind.MEDIA_RESTORE).get(task.subject)
        if record is None:
            return None
        return record.snapshot_for(task.snapshot_date)

    async def _process(self, task: ProcessingTask, objects: list[ProcessObject]) -> StepOutcome:
        snapshot = self._snapshot(task)
        if snapshot is None:
            for obj in objects:
                obj.reset()
            return StepOutcome(success=False)
        self._executor.prepare(objects, task, snapshot)
        return await self._executor.run_media(task, objects, snapshot)

    def _complete(self, task: ProcessingTask, outcome: StepOutcome) -> None:
        snapshot = self._snapshot(task)
        if outcome.success and snapshot is not None and ObjectType.MEDIA in outcome.completed:
            snapshot.select_data = False
