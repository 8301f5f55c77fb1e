"""
Filesystem Reconciliation Scanner
==================================

Brings the persisted indexes in line with what is actually on disk and
on the device.

Restore indexes (apps and media):
  1. `find <root> -type f -name "*.tar*"` lists every archive.
  2. Paths are parsed into (subject, date, stem) entries and ordered so
     that each (subject, date) group is contiguous.
  3. A single forward pass compares every entry with its successor. A
     group is closed when the successor has a different date or
     subject; a subject is flushed when the successor has a different
     subject. A sentinel entry (subject None) is appended so the last
     real entry has a successor too.
  4. Subjects that were not observed lose their snapshots; subjects
     without snapshots and the empty key are dropped.
  5. A separate pass asks the package manager which restore subjects
     are installed.

Backup indexes:
  - refresh_app_backup():   installed packages → AppBackupRecord
  - refresh_media_backup(): default folders + current folder sizes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from databackup.config import (
    DEFAULT_MEDIA_FOLDERS,
    MEDIA_STORAGE_ROOT,
    NAME_MISSING,
    BackupSettings,
)
from databackup.index_store import MetadataIndex
from databackup.models.index import (
    AppBackupRecord,
    AppRestoreRecord,
    AppSnapshot,
    CompressionType,
    MediaBackupRecord,
    MediaRestoreRecord,
    MediaSnapshot,
    ObjectType,
    SubjectBase,
    split_archive_name,
)

logger = logging.getLogger("databackup.engine.scanner")

ARCHIVE_PATTERN = "*.tar*"

_APP_STEMS = {t.value: t for t in ObjectType if t != ObjectType.MEDIA}


# =============================================================================
# Grouping pass (pure)
# =============================================================================

@dataclass(frozen=True)
class ArchiveEntry:
    """One archive found below a backup root: <subject>/<date>/<stem>.<ext>"""
    subject: Optional[str]
    date: str
    stem: str
    compression: Optional[CompressionType]


# Terminal successor of the last real entry
SENTINEL = ArchiveEntry(subject=None, date="", stem="", compression=None)

# (date, {stem: compression}) per closed group
DateGroup = tuple[str, dict[str, CompressionType]]


def parse_archive_paths(root: str, paths: list[str]) -> list[ArchiveEntry]:
    """Parses paths below `root`; anything not shaped like an archive is skipped."""
    prefix = root.rstrip("/") + "/"
    entries: list[ArchiveEntry] = []
    for path in paths:
        if not path.startswith(prefix):
            continue
        parts = path[len(prefix):].split("/")
        if len(parts) != 3:
            logger.debug("Ignoring unexpected path: %s", path)
            continue
        subject, date, name = parts
        parsed = split_archive_name(name)
        if parsed is None:
            continue
        entries.append(ArchiveEntry(subject, date, parsed[0], parsed[1]))
    # Stable: directory order is kept inside one group
    entries.sort(key=lambda e: (e.subject, e.date))
    return entries


def group_entries(entries: list[ArchiveEntry]) -> Iterator[tuple[str, list[DateGroup]]]:
    """
    Single forward pass with lookahead.

    Yields (subject, [(date, {stem: compression}), ...]) once per subject,
    in entry order.
    """
    stems: dict[str, CompressionType] = {}
    dates: list[DateGroup] = []
    sequence = list(entries) + [SENTINEL]

    for current, successor in zip(sequence, sequence[1:]):
        stems[current.stem] = current.compression

        if successor.subject != current.subject or successor.date != current.date:
            dates.append((current.date, stems))
            stems = {}

        if successor.subject != current.subject:
            yield current.subject, dates
            dates = []


# =============================================================================
# Merge (pure)
# =============================================================================

def merge_app_archives(
    index: MetadataIndex,
    root: str,
    paths: list[str],
) -> MetadataIndex:
    """
    Reconciles an app-restore index with the archives under `root`.

    Prior snapshots with the same date keep their selection and version
    fields; presence comes from disk only.
    """
    observed: set[str] = set()

    for subject, dates in group_entries(parse_archive_paths(root, paths)):
        observed.add(subject)
        record: Optional[AppRestoreRecord] = index.get(subject)
        if record is None:
            record = AppRestoreRecord(
                base=SubjectBase(package_name=subject, app_name=NAME_MISSING),
            )
        cursor_date = record.current.date if record.current else None

        snapshots: list[AppSnapshot] = []
        for date, stems in dates:
            archives = {_APP_STEMS[s]: c for s, c in stems.items() if s in _APP_STEMS}
            if not archives:
                continue
            prior = record.snapshot_for(date)
            snap = prior.model_copy(deep=True) if prior else AppSnapshot(date=date)
            snap.observe(archives)
            snapshots.append(snap)

        record.snapshots = snapshots
        _restore_cursor(record, cursor_date)
        index.upsert(subject, lambda _, r=record: r)

    _drop_unobserved(index, observed)
    return index


def merge_media_archives(
    index: MetadataIndex,
    root: str,
    paths: list[str],
    default_parent: str = MEDIA_STORAGE_ROOT,
) -> MetadataIndex:
    """Same as merge_app_archives for `<name>/<date>/<name>.<ext>`."""
    observed: set[str] = set()

    for name, dates in group_entries(parse_archive_paths(root, paths)):
        observed.add(name)
        record: Optional[MediaRestoreRecord] = index.get(name)
        if record is None:
            record = MediaRestoreRecord(name=name, path=f"{default_parent}/{name}")
        cursor_date = record.current.date if record.current else None

        snapshots: list[MediaSnapshot] = []
        for date, stems in dates:
            compression = stems.get(name)
            if compression is None:
                continue
            prior = record.snapshot_for(date)
            snap = prior.model_copy(deep=True) if prior else MediaSnapshot(date=date)
            snap.observe(compression)
            snapshots.append(snap)

        record.snapshots = snapshots
        _restore_cursor(record, cursor_date)
        index.upsert(name, lambda _, r=record: r)

    _drop_unobserved(index, observed)
    return index


def _restore_cursor(record, cursor_date: Optional[str]) -> None:
    """Keeps the cursor on the same date if that snapshot survived."""
    for position, snap in enumerate(record.snapshots):
        if snap.date == cursor_date:
            record.restore_index = position
            return
    record.clamp_cursor()


def _drop_unobserved(index: MetadataIndex, observed: set[str]) -> None:
    for key in index:
        record = index.get(key)
        if key not in observed:
            record.snapshots = []
        if not key or not record.snapshots:
            logger.info("Dropping %r: no snapshot left on disk", key)
            index.remove(key)


# =============================================================================
# Scanner (device I/O)
# =============================================================================

class ReconciliationScanner:
    """
    Runs the reconciliation against the device.

    Usage:
        scanner = ReconciliationScanner(gateway, settings)
        await scanner.scan_app_restore(restore_map)
    """

    def __init__(self, gateway, settings: BackupSettings):
        self._gateway = gateway
        self._settings = settings

    async def _list_archives(self, root: str) -> Optional[list[str]]:
        paths = await self._gateway.find(root, ARCHIVE_PATTERN)
        if paths is not None:
            return paths
        if not await self._gateway.exists(root):
            logger.info("Backup root %s does not exist yet", root)
            return []
        logger.warning("Listing %s failed, index kept as loaded", root)
        return None

    async def scan_app_restore(self, index: MetadataIndex) -> MetadataIndex:
        root = self._settings.data_root
        paths = await self._list_archives(root)
        if paths is not None:
            merge_app_archives(index, root, paths)
            logger.info("App restore index reconciled: %d subjects (%d archives)", len(index), len(paths))
        else:
            _drop_unobserved(index, set(index.keys()))
        await self.check_installed(index)
        return index

    async def check_installed(self, index: MetadataIndex) -> None:
        """Separate pass: install status of every restore subject."""
        user = self._settings.restore_user
        for key, record in index.items():
            record.is_on_this_device = await self._gateway.find_package(user, key)

    async def scan_media_restore(self, index: MetadataIndex) -> MetadataIndex:
        root = self._settings.media_root
        paths = await self._list_archives(root)
        if paths is not None:
            merge_media_archives(index, root, paths)
            logger.info("Media restore index reconciled: %d folders", len(index))
        else:
            _drop_unobserved(index, set(index.keys()))
        return index

    # =========================================================================
    # Backup side
    # =========================================================================

    async def refresh_app_backup(
        self,
        index: MetadataIndex,
        blacklist: Optional[MetadataIndex] = None,
    ) -> MetadataIndex:
        """Syncs the backup index with the installed packages."""
        user = self._settings.backup_user
        installed: dict[str, bool] = {}
        for system in (False, True):
            for package in await self._gateway.list_packages(user, system=system):
                installed[package] = system

        for key, record in index.items():
            if key not in installed:
                record.is_on_this_device = False

        for package, system in installed.items():
            details = await self._gateway.query_package_details(user, package)

            def update(record: Optional[AppBackupRecord]) -> AppBackupRecord:
                if record is None:
                    record = AppBackupRecord(
                        base=SubjectBase(package_name=package, app_name=package),
                    )
                record.is_on_this_device = True
                record.base.is_system_app = system
                if details is not None:
                    record.version_name = details.version_name
                    record.version_code = details.version_code
                    record.base.first_install_time = details.first_install_time
                return record

            index.upsert(package, update)

        if blacklist is not None:
            for package in blacklist:
                if index.remove(package) is not None:
                    logger.debug("Blacklisted, removed from backup index: %s", package)

        logger.info(
            "App backup index refreshed: %d packages (%d installed)",
            len(index), len(installed),
        )
        return index

    async def refresh_media_backup(self, index: MetadataIndex) -> MetadataIndex:
        """Seeds the default folders if empty and measures every folder."""
        if index.is_empty():
            for name in DEFAULT_MEDIA_FOLDERS:
                index.upsert(
                    name,
                    lambda _, n=name: MediaBackupRecord(name=n, path=f"{MEDIA_STORAGE_ROOT}/{n}"),
                )
            logger.info("Media backup index seeded with %s", ", ".join(DEFAULT_MEDIA_FOLDERS))

        for record in index.values():
            record.current_size = await self._gateway.stat_size(record.path) or 0
        return index
