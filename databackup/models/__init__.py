from .index import (
    APP_OBJECTS, DATA_OBJECTS,
    AppBackupRecord, AppRestoreRecord, AppSnapshot,
    BackupStrategy, BlacklistEntry, CompressionType,
    MediaBackupRecord, MediaRestoreRecord, MediaSnapshot,
    ObjectType, SubjectBase, split_archive_name,
)
from .task import (
    ProcessObject, ProcessState, ProcessStatus, ProcessingTask, StatusEvent,
    new_app_objects, new_media_objects,
)

__all__ = [
    # Index
    "APP_OBJECTS",
    "DATA_OBJECTS",
    "AppBackupRecord",
    "AppRestoreRecord",
    "AppSnapshot",
    "BackupStrategy",
    "BlacklistEntry",
    "CompressionType",
    "MediaBackupRecord",
    "MediaRestoreRecord",
    "MediaSnapshot",
    "ObjectType",
    "SubjectBase",
    "split_archive_name",
    # Tasks
    "ProcessObject",
    "ProcessState",
    "ProcessStatus",
    "ProcessingTask",
    "StatusEvent",
    "new_app_objects",
    "new_media_objects",
]
