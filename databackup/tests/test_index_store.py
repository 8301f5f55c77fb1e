"""
Unit Tests: Metadata Index Store
=================================

  - JSON codec: malformed/missing documents load empty, never raise
  - Selection narrowing on load (select ⟹ present)
  - Restore cursor clamped on load
  - Save: one write per index, stable output
  - Blacklist maintenance
"""

import json

import pytest

from databackup.index_store import IndexKind, IndexStore, MetadataIndex, dump_index, parse_index
from databackup.models.index import (
    AppRestoreRecord,
    AppSnapshot,
    BlacklistEntry,
    CompressionType,
    ObjectType,
    SubjectBase,
)


def _restore_doc(**snapshot) -> str:
    snap = {"date": "20240101000000", "has_app": True, "has_data": False,
            "archives": {"apk": "zstd"}, **snapshot}
    return json.dumps({
        "com.example": {
            "base": {"package_name": "com.example", "app_name": "Example"},
            "snapshots": [snap],
            "restore_index": 0,
        }
    })


# =============================================================================
# Codec
# =============================================================================

class TestParseIndex:

    @pytest.mark.parametrize("raw", [None, "", "   ", "{not json", "[1, 2]", '{"x": 5}'])
    def test_malformed_yields_empty(self, raw):
        index = parse_index(IndexKind.APP_RESTORE, raw)
        assert isinstance(index, MetadataIndex)
        assert index.is_empty()

    def test_parses_records(self):
        index = parse_index(IndexKind.APP_RESTORE, _restore_doc())
        record = index.get("com.example")
        assert record.base.app_name == "Example"
        assert record.current.archives == {ObjectType.APP: CompressionType.ZSTD}

    def test_selection_narrowed_on_load(self):
        index = parse_index(
            IndexKind.APP_RESTORE, _restore_doc(select_app=True, select_data=True),
        )
        snap = index.get("com.example").current
        assert snap.select_app is True
        assert snap.select_data is False

    def test_cursor_clamped_on_load(self):
        doc = json.loads(_restore_doc())
        doc["com.example"]["restore_index"] = 7
        index = parse_index(IndexKind.APP_RESTORE, json.dumps(doc))
        assert index.get("com.example").restore_index == 0

    def test_dump_is_sorted_and_parseable(self):
        index = MetadataIndex(IndexKind.BLACKLIST)
        index.upsert("z.pkg", lambda _: BlacklistEntry(package_name="z.pkg"))
        index.upsert("a.pkg", lambda _: BlacklistEntry(package_name="a.pkg"))
        raw = dump_index(index)
        assert list(json.loads(raw)) == ["a.pkg", "z.pkg"]
        assert parse_index(IndexKind.BLACKLIST, raw).keys() == ["a.pkg", "z.pkg"]


class TestMetadataIndex:

    def test_upsert_none_removes(self):
        index = MetadataIndex(IndexKind.BLACKLIST)
        index.upsert("a", lambda _: BlacklistEntry(package_name="a"))
        index.upsert("a", lambda _: None)
        assert "a" not in index

    def test_upsert_receives_existing(self):
        index = MetadataIndex(IndexKind.BLACKLIST)
        index.upsert("a", lambda _: BlacklistEntry(package_name="a"))
        seen = []
        index.upsert("a", lambda old: seen.append(old) or old)
        assert seen[0].package_name == "a"

    def test_iteration_tolerates_removal(self):
        index = MetadataIndex(IndexKind.BLACKLIST)
        for key in ("a", "b", "c"):
            index.upsert(key, lambda _, k=key: BlacklistEntry(package_name=k))
        for key in index:
            index.remove(key)
        assert len(index) == 0


# =============================================================================
# Store
# =============================================================================

class TestIndexStore:

    @pytest.mark.asyncio
    async def test_missing_file_loads_empty(self, gateway, settings):
        store = IndexStore(gateway, settings)
        index = await store.load(IndexKind.APP_RESTORE)
        assert index.is_empty()

    @pytest.mark.asyncio
    async def test_save_then_load(self, gateway, settings):
        store = IndexStore(gateway, settings)
        index = MetadataIndex(IndexKind.APP_RESTORE)
        record = AppRestoreRecord(
            base=SubjectBase(package_name="com.example"),
            snapshots=[AppSnapshot(date="Cover", has_app=True,
                                   archives={ObjectType.APP: CompressionType.TAR})],
        )
        index.upsert("com.example", lambda _: record)

        assert await store.save(index) is True
        assert gateway.called("write_file") == [
            ("write_file", f"{settings.config_root}/appRestoreMap.json"),
        ]

        loaded = await store.load(IndexKind.APP_RESTORE)
        assert loaded.get("com.example").current.date == "Cover"

    @pytest.mark.asyncio
    async def test_save_failure_reported(self, gateway, settings):
        gateway.fail_write = True
        store = IndexStore(gateway, settings)
        assert await store.save(MetadataIndex(IndexKind.BLACKLIST)) is False

    @pytest.mark.asyncio
    async def test_blacklist_add_remove(self, gateway, settings):
        store = IndexStore(gateway, settings)
        await store.add_to_blacklist(BlacklistEntry(package_name="com.bad", app_name="Bad"))
        await store.add_to_blacklist(BlacklistEntry(package_name="com.worse"))
        assert (await store.load(IndexKind.BLACKLIST)).keys() == ["com.bad", "com.worse"]

        await store.remove_from_blacklist("com.bad")
        assert (await store.load(IndexKind.BLACKLIST)).keys() == ["com.worse"]

    @pytest.mark.asyncio
    async def test_remove_unknown_does_not_write(self, gateway, settings):
        store = IndexStore(gateway, settings)
        assert await store.remove_from_blacklist("com.none") is True
        assert gateway.called("write_file") == []
