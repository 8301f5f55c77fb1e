"""
Archive Pipeline
=================

Creates, verifies and extracts the per-object archives.

compress():
  1. Cover strategy + expected size given → measure the source. Same
     size AND archive present → Skip (no re-archiving).
  2. Otherwise Compressing → create → ShowTotal(output) / Error.
  3. The archive must exist afterwards, skipped or not.
  4. Verification enabled → Testing → on failure the archive is deleted.
  5. Finished.

decompress():
  Decompressing → extract → ShowTotal(output) / Error → Finished.

Every call emits exactly one terminal event (Finished or Error); callers
must not emit another one.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Callable, Optional

from databackup.config import BackupSettings
from databackup.models.index import CompressionType, ObjectType
from databackup.models.task import ProcessStatus, StatusEvent

logger = logging.getLogger("databackup.engine.archive")

EventSink = Callable[[StatusEvent], None]

TEST_FAILED = "Test failed. The broken file has been deleted."


def _ignore(_: StatusEvent) -> None:
    pass


@dataclass
class CompressResult:
    """Outcome of compress(). `size` is the measured source size."""
    success: bool
    archive: str = ""
    size: Optional[int] = None
    skipped: bool = False


def archive_path(
    output_dir: str,
    object_type: ObjectType,
    compression: CompressionType,
    name: str = "",
) -> str:
    """`<dir>/<stem>.<suffix>`; media archives are named after the folder."""
    stem = name if object_type == ObjectType.MEDIA else object_type.value
    return f"{output_dir}/{stem}.{compression.suffix}"


class ArchivePipeline:
    """
    Per-object archive operations on top of the gateway.

    Usage:
        pipeline = ArchivePipeline(gateway, settings)
        result = await pipeline.compress(
            ObjectType.USER, "/data/user/0/com.example", out_dir,
            expected_size=record.sizes.get("user"), on_event=obj.apply,
        )
    """

    def __init__(self, gateway, settings: BackupSettings):
        self._gateway = gateway
        self._settings = settings

    async def compress(
        self,
        object_type: ObjectType,
        source_path: str,
        output_dir: str,
        expected_size: Optional[int] = None,
        on_event: Optional[EventSink] = None,
    ) -> CompressResult:
        """
        Archives `source_path` into `output_dir`.

        Args:
            object_type:   APP archives the APK directory's content, every
                           other type archives the directory itself
            source_path:   live directory to archive
            output_dir:    snapshot directory
            expected_size: source size recorded at the previous backup
            on_event:      receives every status event

        Returns:
            CompressResult
        """
        emit = on_event or _ignore
        compression = self._settings.compression_type
        name = posixpath.basename(source_path.rstrip("/"))
        target = archive_path(output_dir, object_type, compression, name)

        size: Optional[int] = None
        need_update = True
        if self._settings.is_cover and expected_size is not None:
            size = await self._gateway.stat_size(source_path)
            if size is not None and size == expected_size:
                need_update = False
                logger.info("%s may have no update.", source_path)
            if not need_update and not await self._gateway.exists(target):
                need_update = True
                logger.info("%s is missing, needs update.", target)

        if need_update:
            if size is None:
                size = await self._gateway.stat_size(source_path)

            if object_type == ObjectType.APP:
                parent, entry = source_path, "."
            else:
                parent, entry = posixpath.dirname(source_path.rstrip("/")), name

            emit(StatusEvent(ProcessStatus.COMPRESSING))
            created = await self._gateway.compress_archive(
                object_type, compression, parent, entry, target,
                compatible_mode=self._settings.compatible_mode,
            )
            if not created.success:
                logger.warning("Compressing %s failed: %s", source_path, created.text[:300])
                emit(StatusEvent(ProcessStatus.ERROR, created.text))
                return CompressResult(success=False, archive=target, size=size)
            emit(StatusEvent(ProcessStatus.SHOW_TOTAL, created.text))
            logger.info("%s compressed.", object_type.value)
        else:
            emit(StatusEvent(ProcessStatus.SKIP))

        if not await self._gateway.exists(target):
            message = f"{target} is missing."
            logger.warning(message)
            emit(StatusEvent(ProcessStatus.ERROR, message))
            return CompressResult(success=False, archive=target, size=size)

        if self._settings.test_archives:
            emit(StatusEvent(ProcessStatus.TESTING))
            tested = await self._gateway.test_archive(compression, target)
            if not tested.success:
                await self._gateway.delete_recursive(target)
                logger.error("%s: %s", target, TEST_FAILED)
                emit(StatusEvent(ProcessStatus.ERROR, TEST_FAILED))
                return CompressResult(success=False, archive=target, size=size)

        emit(StatusEvent(ProcessStatus.FINISHED))
        return CompressResult(success=True, archive=target, size=size, skipped=not need_update)

    async def decompress(
        self,
        object_type: ObjectType,
        archive: str,
        subject_id: str,
        destination: str,
        on_event: Optional[EventSink] = None,
    ) -> bool:
        """Extracts `archive` into `destination`. No skip logic."""
        emit = on_event or _ignore
        compression = CompressionType.from_filename(archive)
        if compression is None:
            emit(StatusEvent(ProcessStatus.ERROR, f"Unknown archive type: {archive}"))
            return False

        emit(StatusEvent(ProcessStatus.DECOMPRESSING))
        extracted = await self._gateway.decompress_archive(compression, archive, destination)
        if not extracted.success:
            logger.warning("Decompressing %s (%s) failed: %s", archive, subject_id, extracted.text[:300])
            emit(StatusEvent(ProcessStatus.ERROR, extracted.text))
            return False

        emit(StatusEvent(ProcessStatus.SHOW_TOTAL, extracted.text))
        logger.info("%s of %s decompressed.", object_type.value, subject_id)
        emit(StatusEvent(ProcessStatus.FINISHED))
        return True
