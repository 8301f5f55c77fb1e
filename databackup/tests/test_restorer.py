"""
Unit Tests: Restoration Step Executor
======================================

  - Visibility = selection ∩ archives in the snapshot
  - APK install failure short-circuits the subject ("apk not installed")
  - Data failures do not stop sibling objects
  - Ownership is reapplied after a failed extraction
  - Cancellation between objects
"""

import asyncio

import pytest

from databackup.engine.archive import ArchivePipeline
from databackup.engine.restorer import APK_NOT_INSTALLED, RestoreExecutor
from databackup.models.index import AppSnapshot, CompressionType, MediaSnapshot, ObjectType
from databackup.models.task import (
    ProcessState,
    ProcessStatus,
    ProcessingTask,
    new_app_objects,
    new_media_objects,
)

PKG = "com.example"
DATE = "20240101120000"


@pytest.fixture
def cancel():
    return asyncio.Event()


@pytest.fixture
def sink_events():
    return []


@pytest.fixture
def executor(gateway, settings, cancel, sink_events):
    return RestoreExecutor(
        gateway, ArchivePipeline(gateway, settings), settings, cancel,
        lambda task, obj, event: sink_events.append((obj.type, event)),
    )


def _snapshot(*types: ObjectType, version_code="3") -> AppSnapshot:
    snap = AppSnapshot(date=DATE, version_code=version_code)
    snap.observe({t: CompressionType.ZSTD for t in types})
    return snap


def _task(select_app=True, select_data=True) -> ProcessingTask:
    return ProcessingTask(subject=PKG, display_name="Example", select_app=select_app,
                          select_data=select_data, snapshot_date=DATE)


def _stage(gateway, settings, *types: ObjectType) -> None:
    for t in types:
        gateway.add_archive(f"{settings.data_root}/{PKG}/{DATE}/{t.value}.tar.zst")


def _by_type(objects):
    return {o.type: o for o in objects}


class TestPrepare:

    def test_visibility_is_selection_and_presence(self):
        objects = new_app_objects()
        RestoreExecutor.prepare(objects, _task(select_app=False), _snapshot(ObjectType.APP, ObjectType.USER))
        visible = [o.type for o in objects if o.visible]
        assert visible == [ObjectType.USER]

    def test_media_visibility(self):
        objects = new_media_objects()
        snap = MediaSnapshot(date="Cover")
        snap.observe(CompressionType.TAR)
        RestoreExecutor.prepare(objects, _task(), snap)
        assert objects[0].visible


class TestRestoreApp:

    @pytest.mark.asyncio
    async def test_full_restore(self, gateway, settings, executor):
        types = (ObjectType.APP, ObjectType.USER, ObjectType.DATA)
        _stage(gateway, settings, *types)
        snap = _snapshot(*types)
        objects = new_app_objects()
        executor.prepare(objects, _task(), snap)

        outcome = await executor.run(_task(), objects, snap)

        assert outcome.success and not outcome.cancelled
        assert outcome.completed == list(types)
        states = _by_type(objects)
        assert states[ObjectType.USER_DE].state == ProcessState.WAITING
        assert all(states[t].state == ProcessState.SUCCESS for t in types)
        assert gateway.called("set_install_env")
        owner = gateway.called("set_owner_and_context")
        assert [c[3] for c in owner] == [
            f"/data/user/0/{PKG}", f"/data/media/0/Android/data/{PKG}",
        ]

    @pytest.mark.asyncio
    async def test_install_failure_short_circuits(self, gateway, settings, executor, sink_events):
        types = (ObjectType.APP, ObjectType.USER, ObjectType.DATA)
        _stage(gateway, settings, *types)
        gateway.fail_install.add(PKG)
        snap = _snapshot(*types)
        objects = new_app_objects()
        executor.prepare(objects, _task(), snap)

        outcome = await executor.run(_task(), objects, snap)

        assert not outcome.success
        states = _by_type(objects)
        assert states[ObjectType.APP].state == ProcessState.FAILED
        for t in (ObjectType.USER, ObjectType.USER_DE, ObjectType.DATA, ObjectType.OBB):
            assert states[t].state == ProcessState.ERROR
            assert states[t].subtitle == APK_NOT_INSTALLED
        assert gateway.called("decompress_archive") == []
        assert gateway.called("set_owner_and_context") == []
        assert [t for t, e in sink_events if e.detail == APK_NOT_INSTALLED] == [
            ObjectType.USER, ObjectType.USER_DE, ObjectType.DATA, ObjectType.OBB,
        ]

    @pytest.mark.asyncio
    async def test_package_missing_after_install(self, gateway, settings, executor):
        _stage(gateway, settings, ObjectType.APP)
        snap = _snapshot(ObjectType.APP)
        objects = new_app_objects()
        executor.prepare(objects, _task(), snap)

        async def _vanish(*_):
            return False
        gateway.find_package = _vanish

        outcome = await executor.run(_task(), objects, snap)
        assert not outcome.success
        assert _by_type(objects)[ObjectType.APP].subtitle == f"Package: {PKG} not found."

    @pytest.mark.asyncio
    async def test_data_failure_continues(self, gateway, settings, executor):
        types = (ObjectType.USER, ObjectType.USER_DE, ObjectType.OBB)
        _stage(gateway, settings, *types)
        gateway.fail_decompress.add(f"{settings.data_root}/{PKG}/{DATE}/user.tar.zst")
        snap = _snapshot(*types)
        objects = new_app_objects()
        executor.prepare(objects, _task(), snap)

        outcome = await executor.run(_task(), objects, snap)

        assert not outcome.success
        assert outcome.completed == [ObjectType.USER_DE, ObjectType.OBB]
        user = _by_type(objects)[ObjectType.USER]
        assert user.state == ProcessState.FAILED
        assert user.title == "Error"
        # a partial extraction still gets ownership and context back
        assert f"/data/user/0/{PKG}" in [c[3] for c in gateway.called("set_owner_and_context")]

    @pytest.mark.asyncio
    async def test_owner_step_after_failed_extraction(self, gateway, settings, executor, sink_events):
        _stage(gateway, settings, ObjectType.USER)
        gateway.fail_decompress.add(f"{settings.data_root}/{PKG}/{DATE}/user.tar.zst")
        snap = _snapshot(ObjectType.USER)
        objects = new_app_objects()
        executor.prepare(objects, _task(select_app=False), snap)

        outcome = await executor.run(_task(select_app=False), objects, snap)

        assert not outcome.success
        assert outcome.completed == []
        owner = gateway.called("set_owner_and_context")
        assert [(c[1], c[3]) for c in owner] == [(ObjectType.USER, f"/data/user/0/{PKG}")]
        statuses = [e.status for _, e in sink_events]
        assert ProcessStatus.FINISHED not in statuses
        assert statuses[-1] == ProcessStatus.ERROR

    @pytest.mark.asyncio
    async def test_owner_failure_fails_object(self, gateway, settings, executor):
        _stage(gateway, settings, ObjectType.USER)
        gateway.fail_owner.add(f"/data/user/0/{PKG}")
        snap = _snapshot(ObjectType.USER)
        objects = new_app_objects()
        executor.prepare(objects, _task(), snap)

        outcome = await executor.run(_task(), objects, snap)

        assert not outcome.success
        assert _by_type(objects)[ObjectType.USER].state == ProcessState.FAILED

    @pytest.mark.asyncio
    async def test_captured_context_reported(self, gateway, settings, executor):
        _stage(gateway, settings, ObjectType.USER)
        gateway.contexts[f"/data/user/0/{PKG}"] = "u:object_r:app_data_file:s0:c12"
        snap = _snapshot(ObjectType.USER)
        objects = new_app_objects()
        executor.prepare(objects, _task(), snap)

        outcome = await executor.run(_task(), objects, snap)

        assert outcome.captured_contexts == {ObjectType.USER: "u:object_r:app_data_file:s0:c12"}
        # the policy context is applied, not the captured one
        assert gateway.called("set_owner_and_context")[0][5] == settings.security_context

    @pytest.mark.asyncio
    async def test_cancel_between_objects(self, gateway, settings, executor, cancel):
        types = (ObjectType.USER, ObjectType.USER_DE, ObjectType.DATA)
        _stage(gateway, settings, *types)
        snap = _snapshot(*types)
        objects = new_app_objects()
        executor.prepare(objects, _task(), snap)

        # flag set while USER is being finished
        gateway.hooks["set_owner_and_context"] = lambda *_: cancel.set()

        outcome = await executor.run(_task(), objects, snap)

        assert outcome.cancelled
        states = _by_type(objects)
        assert states[ObjectType.USER].state == ProcessState.SUCCESS
        assert states[ObjectType.USER_DE].state == ProcessState.WAITING
        assert states[ObjectType.DATA].state == ProcessState.WAITING
        assert len(gateway.called("decompress_archive")) == 1


class TestRestoreMedia:

    @pytest.mark.asyncio
    async def test_media_restore(self, gateway, settings, executor):
        gateway.add_archive(f"{settings.media_root}/DCIM/Cover/DCIM.tar")
        snap = MediaSnapshot(date="Cover")
        snap.observe(CompressionType.TAR)
        task = ProcessingTask(subject="DCIM", display_name="DCIM", select_data=True,
                              snapshot_date="Cover", target_path="/storage/emulated/0/DCIM")
        objects = new_media_objects()
        executor.prepare(objects, task, snap)

        outcome = await executor.run_media(task, objects, snap)

        assert outcome.success
        assert gateway.called("decompress_archive")[0][3] == "/storage/emulated/0"
        owner = gateway.called("set_owner_and_context")[0]
        assert owner[1] == ObjectType.MEDIA
        assert owner[3] == "/storage/emulated/0/DCIM"

    @pytest.mark.asyncio
    async def test_media_restorecon_after_failed_extraction(self, gateway, settings, executor):
        # archive registered in the snapshot but missing on disk
        snap = MediaSnapshot(date="Cover")
        snap.observe(CompressionType.TAR)
        task = ProcessingTask(subject="DCIM", display_name="DCIM", select_data=True,
                              snapshot_date="Cover", target_path="/storage/emulated/0/DCIM")
        objects = new_media_objects()
        executor.prepare(objects, task, snap)

        outcome = await executor.run_media(task, objects, snap)

        assert not outcome.success
        assert objects[0].state == ProcessState.FAILED
        assert [c[3] for c in gateway.called("set_owner_and_context")] == ["/storage/emulated/0/DCIM"]
