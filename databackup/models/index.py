"""
Metadata Index Models
======================

Pydantic models for the five persisted index kinds:
  1. AppBackupRecord     — installed app offered for backup
  2. AppRestoreRecord    — backed-up app with its dated snapshots
  3. MediaBackupRecord   — media folder offered for backup
  4. MediaRestoreRecord  — backed-up media folder with its snapshots
  5. BlacklistEntry      — package excluded from backup

Selection flags never exceed presence flags: `select_app ⟹ has_app`,
`select_data ⟹ has_data`. The narrowing runs on every load and on every
reconciliation (`observe()`).

Storage format: see index_store.py
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# Enums
# =============================================================================

class ObjectType(str, Enum):
    """Archive object types. The value is the archive file stem."""
    APP = "apk"
    USER = "user"
    USER_DE = "user_de"
    DATA = "data"
    OBB = "obb"
    MEDIA = "media"

    @property
    def is_app_data(self) -> bool:
        return self in DATA_OBJECTS


# Fixed processing order of one app subject
APP_OBJECTS: tuple[ObjectType, ...] = (
    ObjectType.APP,
    ObjectType.USER,
    ObjectType.USER_DE,
    ObjectType.DATA,
    ObjectType.OBB,
)
DATA_OBJECTS: tuple[ObjectType, ...] = APP_OBJECTS[1:]


class CompressionType(str, Enum):
    """Archive container/codec."""
    TAR = "tar"
    LZ4 = "lz4"
    ZSTD = "zstd"

    @property
    def suffix(self) -> str:
        return _SUFFIXES[self]

    @classmethod
    def from_filename(cls, name: str) -> Optional["CompressionType"]:
        """Detects the type from an archive name, None if not an archive."""
        for ctype in (cls.ZSTD, cls.LZ4, cls.TAR):
            if name.endswith("." + _SUFFIXES[ctype]):
                return ctype
        return None


_SUFFIXES = {
    CompressionType.TAR: "tar",
    CompressionType.LZ4: "tar.lz4",
    CompressionType.ZSTD: "tar.zst",
}


def split_archive_name(name: str) -> Optional[tuple[str, CompressionType]]:
    """`user_de.tar.zst` → ("user_de", ZSTD). None for non-archives."""
    ctype = CompressionType.from_filename(name)
    if ctype is None:
        return None
    stem = name[: -(len(ctype.suffix) + 1)]
    if not stem:
        return None
    return stem, ctype


class BackupStrategy(str, Enum):
    """COVER overwrites one fixed snapshot, TIMESTAMP adds one per run."""
    COVER = "cover"
    TIMESTAMP = "timestamp"


# =============================================================================
# Subjects
# =============================================================================

class SubjectBase(BaseModel):
    """Descriptor shared by backup and restore records of one app."""
    package_name: str
    app_name: str = ""
    is_system_app: bool = False
    first_install_time: str = ""
    icon: Optional[str] = None  # opaque, never interpreted here


class AppSnapshot(BaseModel):
    """One dated backup of an app."""
    date: str
    has_app: bool = False
    has_data: bool = False
    archives: dict[ObjectType, CompressionType] = Field(default_factory=dict)
    select_app: bool = False
    select_data: bool = False
    version_name: str = ""
    version_code: str = ""

    @model_validator(mode="after")
    def validate_selection(self) -> "AppSnapshot":
        self.narrow()
        return self

    def narrow(self) -> None:
        self.select_app = self.select_app and self.has_app
        self.select_data = self.select_data and self.has_data

    def observe(self, archives: dict[ObjectType, CompressionType]) -> None:
        """Replaces presence with what was found on disk and narrows selection."""
        self.archives = dict(archives)
        self.has_app = ObjectType.APP in archives
        self.has_data = any(t in archives for t in DATA_OBJECTS)
        self.narrow()

    def has_object(self, object_type: ObjectType) -> bool:
        return object_type in self.archives


class AppRestoreRecord(BaseModel):
    """Backed-up app; never persisted with an empty snapshot list."""
    base: SubjectBase
    is_on_this_device: bool = False
    snapshots: list[AppSnapshot] = Field(default_factory=list)
    restore_index: int = 0

    @property
    def current(self) -> Optional[AppSnapshot]:
        """Snapshot the restore cursor points to."""
        if not self.snapshots:
            return None
        return self.snapshots[self.restore_index]

    @property
    def select_app(self) -> bool:
        snap = self.current
        return snap is not None and snap.select_app

    @property
    def select_data(self) -> bool:
        snap = self.current
        return snap is not None and snap.select_data

    def snapshot_for(self, date: str) -> Optional[AppSnapshot]:
        for snap in self.snapshots:
            if snap.date == date:
                return snap
        return None

    def clamp_cursor(self) -> None:
        if not self.snapshots:
            self.restore_index = 0
        else:
            self.restore_index = min(max(self.restore_index, 0), len(self.snapshots) - 1)

    @model_validator(mode="after")
    def validate_cursor(self) -> "AppRestoreRecord":
        self.clamp_cursor()
        return self


class AppBackupRecord(BaseModel):
    """Installed app offered for backup."""
    base: SubjectBase
    is_on_this_device: bool = True
    select_app: bool = False
    select_data: bool = False
    version_name: str = ""
    version_code: str = ""
    # object stem → measured source size of the last backup (Cover strategy)
    sizes: dict[str, int] = Field(default_factory=dict)
    last_backup: str = ""


# =============================================================================
# Media
# =============================================================================

class MediaSnapshot(BaseModel):
    """One dated backup of a media folder."""
    date: str
    has_data: bool = False
    compression: Optional[CompressionType] = None
    select_data: bool = False

    @model_validator(mode="after")
    def validate_selection(self) -> "MediaSnapshot":
        self.narrow()
        return self

    def narrow(self) -> None:
        self.select_data = self.select_data and self.has_data

    def observe(self, compression: Optional[CompressionType]) -> None:
        self.compression = compression
        self.has_data = compression is not None
        self.narrow()


class MediaBackupRecord(BaseModel):
    """Media folder offered for backup."""
    name: str
    path: str
    select_data: bool = False
    size: int = 0           # source size at the last backup (Cover strategy)
    current_size: int = 0   # measured on the last refresh
    last_backup: str = ""


class MediaRestoreRecord(BaseModel):
    """Backed-up media folder; `path` is where it is restored to."""
    name: str
    path: str = ""
    snapshots: list[MediaSnapshot] = Field(default_factory=list)
    restore_index: int = 0

    @property
    def current(self) -> Optional[MediaSnapshot]:
        if not self.snapshots:
            return None
        return self.snapshots[self.restore_index]

    @property
    def select_data(self) -> bool:
        snap = self.current
        return snap is not None and snap.select_data

    def snapshot_for(self, date: str) -> Optional[MediaSnapshot]:
        for snap in self.snapshots:
            if snap.date == date:
                return snap
        return None

    def clamp_cursor(self) -> None:
        if not self.snapshots:
            self.restore_index = 0
        else:
            self.restore_index = min(max(self.restore_index, 0), len(self.snapshots) - 1)

    @model_validator(mode="after")
    def validate_cursor(self) -> "MediaRestoreRecord":
        self.clamp_cursor()
        return self


# =============================================================================
# Blacklist
# =============================================================================

class BlacklistEntry(BaseModel):
    """Package excluded from the backup subject set."""
    package_name: str
    app_name: str = ""

