"""
App Flows
==========

RestoreAppFlow:
  Index:  appRestoreMap (reconciled against <root>/data + package manager)
  Tasks:  subjects whose current snapshot has app or data selected
  Done:   clears select_app / select_data of the restored snapshot

BackupAppFlow:
  Index:  appBackupMap (refreshed from the package manager),
          appRestoreMap (registers the new snapshot), blackListMap
  Tasks:  installed, not blacklisted, app or data selected
  Done:   records source sizes + last backup date, registers the snapshot
          in appRestoreMap (nothing selected)
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
    AppBackupRecord,
    AppRestoreRecord,
    AppSnapshot,
    ObjectType,
)
from databackup.models.task import (
    ProcessObject,
    ProcessingTask,
    new_app_objects,
)

logger = logging.getLogger("databackup.flows.app")


# =============================================================================
# Restore
# =============================================================================

class RestoreAppFlow(TaskRunner):
    """Restores the selected snapshot of every selected app."""

    name = "restore-app"
    kinds = (IndexKind.APP_RESTORE, IndexKind.BLACKLIST)

    def __init__(self, gateway, store, settings, monitor=None):
        super().__init__(gateway, store, settings, monitor)
        self._executor = RestoreExecutor(
            gateway, self._pipeline, settings, self.cancel_event, self._on_object_event,
        )

    def _new_objects(self) -> list[ProcessObject]:
        return new_app_objects()

    async def _reconcile(self) -> None:
        await self._scanner.scan_app_restore(self.index(IndexKind.APP_RESTORE))

    def _build_tasks(self) -> list[ProcessingTask]:
        tasks: list[ProcessingTask] = []
        for key, record in sorted(self.index(IndexKind.APP_RESTORE).items()):
            if self.is_blacklisted(key) or record.current is None:
                continue
            if not (record.select_app or record.select_data):
                continue
            tasks.append(ProcessingTask(
                subject=key,
                display_name=record.base.app_name or key,
                select_app=record.select_app,
                select_data=record.select_data,
                snapshot_date=record.current.date,
            ))
        logger.info("userId: %s.", self._settings.restore_user)
        return tasks

    def _snapshot(self, task: ProcessingTask) -> Optional[AppSnapshot]:
        record: Optional[AppRestoreRecord] = self.index(IndexKind.APP_RESTORE).get(task.subject)
        if record is None:
            return None
        return record.snapshot_for(task.snapshot_date)

    async def _process(self, task: ProcessingTask, objects: list[ProcessObject]) -> StepOutcome:
        snapshot = self._snapshot(task)
        if snapshot is None:
            for obj in objects:
                obj.reset()
            logger.warning("%s: snapshot %s vanished from the index", task.subject, task.snapshot_date)
            return StepOutcome(success=False)

        logger.info("AppName: %s.", task.display_name)
        logger.info("PackageName: %s.", task.subject)
        self._executor.prepare(objects, task, snapshot)
        return await self._executor.run(task, objects, snapshot)

    def _complete(self, task: ProcessingTask, outcome: StepOutcome) -> None:
        snapshot = self._snapshot(task)
        if not outcome.success or snapshot is None:
            return
        if ObjectType.APP in outcome.completed:
            snapshot.select_app = False
        if any(t.is_app_data for t in outcome.completed):
            snapshot.select_data = False
        record = self.index(IndexKind.APP_RESTORE).get(task.subject)
        if ObjectType.APP in outcome.completed:
            record.is_on_this_device = True


# =============================================================================
# Backup
# =============================================================================

class BackupAppFlow(TaskRunner):
    """Backs up every selected installed app."""

    name = "backup-app"
    kinds = (IndexKind.BLACKLIST, IndexKind.APP_BACKUP, IndexKind.APP_RESTORE)

    def __init__(self, gateway, store, settings, monitor=None):
        super().__init__(gateway, store, settings, monitor)
        self._executor = BackupExecutor(
            gateway, self._pipeline, settings, self.cancel_event, self._on_object_event,
        )

    def _new_objects(self) -> list[ProcessObject]:
        return new_app_objects()

    async def _reconcile(self) -> None:
        await self._scanner.refresh_app_backup(
            self.index(IndexKind.APP_BACKUP), self.index(IndexKind.BLACKLIST),
        )
        await self._scanner.scan_app_restore(self.index(IndexKind.APP_RESTORE))

    def _build_tasks(self) -> list[ProcessingTask]:
        tasks: list[ProcessingTask] = []
        for key, record in sorted(self.index(IndexKind.APP_BACKUP).items()):
            if self.is_blacklisted(key) or not record.is_on_this_device:
                continue
            if not (record.select_app or record.select_data):
                continue
            tasks.append(ProcessingTask(
                subject=key,
                display_name=record.base.app_name or key,
                select_app=record.select_app,
                select_data=record.select_data,
                snapshot_date=self.run_date,
            ))
        logger.info("userId: %s.", self._settings.backup_user)
        logger.info("CompressionType: %s.", self._settings.compression_type.value)
        return tasks

    def _output_dir(self, task: ProcessingTask) -> str:
        return f"{self._settings.data_root}/{task.subject}/{task.snapshot_date}"

    async def _process(self, task: ProcessingTask, objects: list[ProcessObject]) -> StepOutcome:
        record: Optional[AppBackupRecord] = self.index(IndexKind.APP_BACKUP).get(task.subject)
        if record is None:
            for obj in objects:
                obj.reset()
            return StepOutcome(success=False)

        logger.info("AppName: %s.", task.display_name)
        logger.info("PackageName: %s.", task.subject)
        await self._executor.prepare(objects, task)
        return await self._executor.run(task, objects, record, self._output_dir(task))

    def _complete(self, task: ProcessingTask, outcome: StepOutcome) -> None:
        record: AppBackupRecord = self.index(IndexKind.APP_BACKUP).get(task.subject)
        for object_type in outcome.completed:
            if object_type in outcome.sizes:
                record.sizes[object_type.value] = outcome.sizes[object_type]
        if outcome.success:
            record.last_backup = task.snapshot_date

        if outcome.archives:
            self._register_snapshot(task, record, outcome)

    def _register_snapshot(
        self,
        task: ProcessingTask,
        record: AppBackupRecord,
        outcome: StepOutcome,
    ) -> None:
        def update(restore: Optional[AppRestoreRecord]) -> AppRestoreRecord:
            if restore is None:
                restore = AppRestoreRecord(base=record.base.model_copy())
            else:
                restore.base.app_name = record.base.app_name
            snapshot = restore.snapshot_for(task.snapshot_date)
            if snapshot is None:
                snapshot = AppSnapshot(date=task.snapshot_date)
                restore.snapshots.append(snapshot)
            snapshot.version_name = record.version_name
            snapshot.version_code = record.version_code
            snapshot.observe({**snapshot.archives, **outcome.archives})
            restore.is_on_this_device = True
            restore.clamp_cursor()
            return restore

        self.index(IndexKind.APP_RESTORE).upsert(task.subject, update)
