"""
Restoration Step Executor
==========================

Replays one snapshot of one subject onto the device.

App subjects, fixed order APP → USER → USER_DE → DATA → OBB:
  APP      log recorded vs live version code, disable install
           verification, install, confirm the package exists.
           Failure → every later object is marked ERROR
           ("apk not installed") and the subject stops.
  USER…OBB capture the live SELinux context (logged and reported, not
           applied), extract into the per-user root, then reapply
           ownership and the policy context. Both steps always run and
           either can fail the object. Failures do not stop the
           remaining objects.

Media subjects have a single MEDIA object: extract next to the live
folder, then restorecon (also after a failed extraction).

Visibility = user selection ∩ archives present in the snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from typing import Optional

from databackup.config import BackupSettings, user_target
from databackup.engine.archive import ArchivePipeline, archive_path
from databackup.engine.executor import Emit, ObjectSink, StepExecutor, StepOutcome
from databackup.models.index import (
    AppSnapshot,
    MediaSnapshot,
    ObjectType,
)
from databackup.models.task import (
    ProcessObject,
    ProcessStatus,
    ProcessingTask,
    StatusEvent,
)

logger = logging.getLogger("databackup.engine.restorer")

APK_NOT_INSTALLED = "apk not installed"


class RestoreExecutor(StepExecutor):
    """
    Usage:
        executor = RestoreExecutor(gateway, pipeline, settings, cancel_event, sink)
        executor.prepare(task.objects, task, snapshot)
        outcome = await executor.run(task, task.objects, snapshot)
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
        self._snapshot: Optional[AppSnapshot] = None
        self._media_snapshot: Optional[MediaSnapshot] = None
        self._handlers = {
            ObjectType.APP: self._install_app,
            ObjectType.USER: self._restore_data,
            ObjectType.USER_DE: self._restore_data,
            ObjectType.DATA: self._restore_data,
            ObjectType.OBB: self._restore_data,
            ObjectType.MEDIA: self._restore_media,
        }

    # =========================================================================
    # Preparation
    # =========================================================================

    @staticmethod
    def prepare(objects: list[ProcessObject], task: ProcessingTask, snapshot) -> None:
        """Resets the objects and computes their visibility."""
        for obj in objects:
            obj.reset()
            if obj.type == ObjectType.APP:
                obj.visible = task.select_app and snapshot.has_object(ObjectType.APP)
            elif obj.type == ObjectType.MEDIA:
                obj.visible = task.select_data and snapshot.has_data
            else:
                obj.visible = task.select_data and snapshot.has_object(obj.type)

    # =========================================================================
    # Run
    # =========================================================================

    async def run(
        self,
        task: ProcessingTask,
        objects: list[ProcessObject],
        snapshot: AppSnapshot,
    ) -> StepOutcome:
        self._snapshot = snapshot
        logger.info("Restoring %s (%s) from %s", task.display_name, task.subject, snapshot.date)
        return await self._run_objects(task, objects)

    async def run_media(
        self,
        task: ProcessingTask,
        objects: list[ProcessObject],
        snapshot: MediaSnapshot,
    ) -> StepOutcome:
        self._media_snapshot = snapshot
        logger.info("Restoring media %s from %s", task.subject, snapshot.date)
        return await self._run_objects(task, objects)

    def _after_failure(self, task, failed, remaining) -> bool:
        if failed.type != ObjectType.APP:
            return False
        for obj in remaining:
            obj.mark_error(APK_NOT_INSTALLED)
            if self._sink is not None:
                self._sink(task, obj, StatusEvent(ProcessStatus.ERROR, APK_NOT_INSTALLED))
        logger.warning("%s: APK not installed, remaining objects skipped", task.subject)
        return True

    def _snapshot_dir(self, task: ProcessingTask) -> str:
        return f"{self._settings.data_root}/{task.subject}/{self._snapshot.date}"

    # =========================================================================
    # Steps
    # =========================================================================

    async def _install_app(self, task: ProcessingTask, obj: ProcessObject, emit: Emit) -> bool:
        package = task.subject
        user = self._settings.restore_user
        snapshot = self._snapshot

        found, live_code = await self._gateway.query_installed_version(user, package)
        if found:
            logger.info("%s version code: %s.", package, live_code)
        else:
            logger.info("Failed to get %s version code.", package)
        if found and snapshot.version_code and live_code != snapshot.version_code:
            logger.info(
                "versionCode: %s, actual appVersionCode: %s.", snapshot.version_code, live_code,
            )

        env = await self._gateway.set_install_env()
        if not env.success:
            logger.warning("Failed to set install env: %s", env.text[:200])

        emit(StatusEvent(ProcessStatus.INSTALLING_APK))
        archive = archive_path(
            self._snapshot_dir(task), ObjectType.APP, snapshot.archives[ObjectType.APP],
        )
        installed = await self._gateway.install_package(archive, package, user)
        if not installed.success:
            emit(StatusEvent(ProcessStatus.ERROR, installed.text))
            return False
        emit(StatusEvent(ProcessStatus.SHOW_TOTAL, installed.text))
        logger.info("Apk installed.")

        if not await self._gateway.find_package(user, package):
            emit(StatusEvent(ProcessStatus.ERROR, f"Package: {package} not found."))
            return False

        emit(StatusEvent(ProcessStatus.FINISHED))
        return True

    async def _restore_data(self, task: ProcessingTask, obj: ProcessObject, emit: Emit) -> bool:
        package = task.subject
        user = self._settings.restore_user
        target_root = user_target(obj.type.value, user)
        target = f"{target_root}/{package}"

        previous = await self._gateway.get_security_context(target)
        self._outcome.captured_contexts[obj.type] = previous
        logger.debug("Context of %s before restore: %s", target, previous or "-")

        archive = archive_path(
            self._snapshot_dir(task), obj.type, self._snapshot.archives[obj.type],
        )
        decompressed = await self._pipeline.decompress(obj.type, archive, package, target_root, emit)
        owned = await self._set_owner_and_context(obj.type, package, target, emit, decompressed)
        return decompressed and owned

    async def _restore_media(self, task: ProcessingTask, obj: ProcessObject, emit: Emit) -> bool:
        snapshot = self._media_snapshot
        name = task.subject
        archive = archive_path(
            f"{self._settings.media_root}/{name}/{snapshot.date}",
            ObjectType.MEDIA, snapshot.compression, name,
        )
        destination = posixpath.dirname(task.target_path.rstrip("/"))
        decompressed = await self._pipeline.decompress(ObjectType.MEDIA, archive, name, destination, emit)
        owned = await self._set_owner_and_context(
            ObjectType.MEDIA, name, task.target_path, emit, decompressed,
        )
        return decompressed and owned

    async def _set_owner_and_context(
        self,
        object_type: ObjectType,
        subject: str,
        path: str,
        emit: Emit,
        decompressed: bool = True,
    ) -> bool:
        """
        Reapplies ownership and context, also after a failed (possibly
        partial) extraction. In that case no FINISHED is emitted, so the
        object keeps showing the extraction error.
        """
        if decompressed:
            emit(StatusEvent(ProcessStatus.SETTING_SECURITY_CONTEXT))
        result = await self._gateway.set_owner_and_context(
            object_type, subject, path, self._settings.restore_user,
            self._settings.security_context,
        )
        if not result.success:
            emit(StatusEvent(ProcessStatus.ERROR, result.text))
            return False
        logger.info("%s setOwnerAndSELinux finished.", object_type.value)
        if decompressed:
            emit(StatusEvent(ProcessStatus.FINISHED))
        return True
