"""
Metadata Index Store
=====================

Typed in-memory indexes plus their JSON persistence on the device.

One JSON document per index kind lives under `<backup root>/config/`:

    appBackupMap.json    package → AppBackupRecord
    appRestoreMap.json   package → AppRestoreRecord
    mediaBackupMap.json  folder  → MediaBackupRecord
    mediaRestoreMap.json folder  → MediaRestoreRecord
    blackListMap.json    package → BlacklistEntry

Loading never raises: a missing or malformed document yields an empty
index (and a warning). Saving is a single write through the gateway.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Callable, Generic, Iterator, Optional, TypeVar, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

from databackup.config import BackupSettings
from databackup.models.index import (
    AppBackupRecord,
    AppRestoreRecord,
    BlacklistEntry,
    MediaBackupRecord,
    MediaRestoreRecord,
)

logger = logging.getLogger("databackup.index")

R = TypeVar("R", bound=BaseModel)


class IndexKind(str, Enum):
    """Persisted index kinds. The value is the file name."""
    APP_BACKUP = "appBackupMap.json"
    APP_RESTORE = "appRestoreMap.json"
    MEDIA_BACKUP = "mediaBackupMap.json"
    MEDIA_RESTORE = "mediaRestoreMap.json"
    BLACKLIST = "blackListMap.json"


_RECORD_TYPES: dict[IndexKind, type[BaseModel]] = {
    IndexKind.APP_BACKUP: AppBackupRecord,
    IndexKind.APP_RESTORE: AppRestoreRecord,
    IndexKind.MEDIA_BACKUP: MediaBackupRecord,
    IndexKind.MEDIA_RESTORE: MediaRestoreRecord,
    IndexKind.BLACKLIST: BlacklistEntry,
}

_ADAPTERS: dict[IndexKind, TypeAdapter] = {
    kind: TypeAdapter(dict[str, model]) for kind, model in _RECORD_TYPES.items()
}


# =============================================================================
# In-memory index
# =============================================================================

class MetadataIndex(Generic[R]):
    """
    Mapping subject key → record for one index kind.

    Mutated in place by a single worker; callers serialize access.
    """

    def __init__(self, kind: IndexKind, records: Optional[dict[str, R]] = None):
        self.kind = kind
        self.records: dict[str, R] = dict(records or {})

    def get(self, key: str) -> Optional[R]:
        return self.records.get(key)

    def remove(self, key: str) -> Optional[R]:
        return self.records.pop(key, None)

    def upsert(self, key: str, fn: Callable[[Optional[R]], Optional[R]]) -> Optional[R]:
        """
        Replaces the record under `key` with `fn(current)`.

        `fn` receives None for a new key; returning None removes the key.
        """
        updated = fn(self.records.get(key))
        if updated is None:
            self.records.pop(key, None)
        else:
            self.records[key] = updated
        return updated

    def keys(self) -> list[str]:
        return list(self.records.keys())

    def values(self) -> list[R]:
        return list(self.records.values())

    def items(self) -> list[tuple[str, R]]:
        return list(self.records.items())

    def __contains__(self, key: object) -> bool:
        return key in self.records

    def __iter__(self) -> Iterator[str]:
        return iter(list(self.records))

    def __len__(self) -> int:
        return len(self.records)

    def is_empty(self) -> bool:
        return not self.records


# =============================================================================
# JSON codec
# =============================================================================

def parse_index(kind: IndexKind, raw: Union[str, bytes, None]) -> MetadataIndex:
    """Parses one index document. Never raises."""
    if raw is None or not raw.strip():
        return MetadataIndex(kind)
    try:
        records = _ADAPTERS[kind].validate_python(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.warning("Malformed index %s, starting empty: %s", kind.value, str(e)[:200])
        return MetadataIndex(kind)
    return MetadataIndex(kind, records)


def dump_index(index: MetadataIndex) -> bytes:
    """Stable JSON (keys sorted, indented)."""
    ordered = dict(sorted(index.records.items()))
    return _ADAPTERS[index.kind].dump_json(ordered, indent=2)


# =============================================================================
# Device-side store
# =============================================================================

class IndexStore:
    """
    Loads and saves indexes through the privileged gateway.

    Usage:
        store = IndexStore(gateway, BackupSettings.from_env())
        restore_map = await store.load(IndexKind.APP_RESTORE)
        ...
        await store.save(restore_map)
    """

    def __init__(self, gateway, settings: BackupSettings):
        self._gateway = gateway
        self._settings = settings

    def path_of(self, kind: IndexKind) -> str:
        return self._settings.index_path(kind.value)

    async def load(self, kind: IndexKind, path: Optional[str] = None) -> MetadataIndex:
        path = path or self.path_of(kind)
        raw = await self._gateway.read_file(path)
        if raw is None:
            logger.info("Index %s not found, starting empty", path)
            return MetadataIndex(kind)
        index = parse_index(kind, raw)
        logger.debug("Index %s loaded: %d records", kind.value, len(index))
        return index

    async def save(self, index: MetadataIndex, path: Optional[str] = None) -> bool:
        path = path or self.path_of(index.kind)
        ok = await self._gateway.write_file(path, dump_index(index))
        if ok:
            logger.info("Index %s saved: %d records", index.kind.value, len(index))
        else:
            logger.error("Index %s could not be saved to %s", index.kind.value, path)
        return ok

    # =========================================================================
    # Blacklist maintenance
    # =========================================================================

    async def add_to_blacklist(self, entry: BlacklistEntry) -> bool:
        blacklist = await self.load(IndexKind.BLACKLIST)
        blacklist.upsert(entry.package_name, lambda _: entry)
        logger.info("Blacklist + %s", entry.package_name)
        return await self.save(blacklist)

    async def remove_from_blacklist(self, package_name: str) -> bool:
        blacklist = await self.load(IndexKind.BLACKLIST)
        if blacklist.remove(package_name) is None:
            return True
        logger.info("Blacklist - %s", package_name)
        return await self.save(blacklist)
