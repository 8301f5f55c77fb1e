"""
Shared fixtures: an in-memory gateway and run settings.

FakeGateway mirrors PrivilegedGateway's async API. Files and directories
live in `self.files` (path → content) and `self.dirs`; every call is
appended to `self.calls`; failures are scripted through the `fail_*` sets.
"""

from __future__ import annotations

import posixpath
from typing import Callable, Optional

import pytest

from databackup.adb.gateway import ExecResult, PackageDetails
from databackup.config import BackupSettings
from databackup.models.index import BackupStrategy, CompressionType, ObjectType

ROOT = "/sdcard/DataBackup"


class FakeGateway:
    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = set()
        self.sizes: dict[str, int] = {}
        self.contexts: dict[str, str] = {}
        # package → system app
        self.packages: dict[str, bool] = {}
        self.versions: dict[str, str] = {}
        self.apk_dirs: dict[str, str] = {}
        self.calls: list[tuple] = []

        self.fail_find = False
        self.fail_write = False
        self.fail_install: set[str] = set()
        self.fail_compress: set[str] = set()
        self.fail_test: set[str] = set()
        self.fail_decompress: set[str] = set()
        self.fail_owner: set[str] = set()
        # name → callback, invoked on entry of that method
        self.hooks: dict[str, Callable[..., None]] = {}

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        hook = self.hooks.get(name)
        if hook is not None:
            hook(*args)

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def add_archive(self, path: str, content: bytes = b"archive") -> None:
        self.files[path] = content

    # --- files ---

    async def read_file(self, path: str) -> Optional[str]:
        self._record("read_file", path)
        if path not in self.files:
            return None
        return self.files[path].decode("utf-8")

    async def write_file(self, path: str, data: bytes) -> bool:
        self._record("write_file", path)
        if self.fail_write:
            return False
        self.files[path] = data
        return True

    async def exists(self, path: str) -> bool:
        self._record("exists", path)
        return path in self.files or path in self.dirs or any(
            p.startswith(path.rstrip("/") + "/") for p in self.files
        )

    async def mkdir(self, path: str) -> bool:
        self.dirs.add(path)
        return True

    async def find(self, root: str, pattern: str) -> Optional[list[str]]:
        self._record("find", root, pattern)
        if self.fail_find:
            return None
        prefix = root.rstrip("/") + "/"
        if not any(p.startswith(prefix) for p in self.files) and root not in self.dirs:
            return None
        return [p for p in self.files if p.startswith(prefix) and ".tar" in posixpath.basename(p)]

    async def stat_size(self, path: str) -> Optional[int]:
        self._record("stat_size", path)
        return self.sizes.get(path)

    async def delete_recursive(self, path: str) -> bool:
        self._record("delete_recursive", path)
        self.files.pop(path, None)
        return True

    # --- packages ---

    async def get_apk_path(self, package: str, user_id: str) -> tuple[bool, str]:
        self._record("get_apk_path", package, user_id)
        if package not in self.apk_dirs:
            return False, ""
        return True, self.apk_dirs[package]

    async def set_install_env(self) -> ExecResult:
        self._record("set_install_env")
        return ExecResult(success=True)

    async def install_package(self, archive_path: str, package: str, user_id: str) -> ExecResult:
        self._record("install_package", archive_path, package, user_id)
        if package in self.fail_install or archive_path not in self.files:
            return ExecResult.failure("Failure [INSTALL_FAILED_INVALID_APK]")
        self.packages.setdefault(package, False)
        return ExecResult(success=True, out=["Success"])

    async def find_package(self, user_id: str, package: str) -> bool:
        self._record("find_package", user_id, package)
        return package in self.packages

    async def list_packages(self, user_id: str, system: bool = False) -> list[str]:
        self._record("list_packages", user_id, system)
        return sorted(p for p, is_system in self.packages.items() if is_system == system)

    async def query_package_details(self, user_id: str, package: str) -> Optional[PackageDetails]:
        if package not in self.packages:
            return None
        code = self.versions.get(package, "1")
        return PackageDetails(package_name=package, version_name=f"v{code}", version_code=code)

    async def query_installed_version(self, user_id: str, package: str) -> tuple[bool, str]:
        self._record("query_installed_version", user_id, package)
        if package not in self.packages:
            return False, ""
        return True, self.versions.get(package, "1")

    # --- context & ownership ---

    async def get_security_context(self, path: str) -> str:
        self._record("get_security_context", path)
        return self.contexts.get(path, "")

    async def set_owner_and_context(
        self,
        object_type: ObjectType,
        package: str,
        path: str,
        user_id: str,
        context: str = "",
    ) -> ExecResult:
        self._record("set_owner_and_context", object_type, package, path, user_id, context)
        if path in self.fail_owner:
            return ExecResult.failure(f"Failed to get uid of {package}.")
        return ExecResult(success=True)

    # --- archives ---

    async def compress_archive(
        self,
        object_type: ObjectType,
        compression: CompressionType,
        parent: str,
        entry: str,
        archive: str,
        compatible_mode: bool = False,
    ) -> ExecResult:
        self._record("compress_archive", object_type, compression, parent, entry, archive)
        if archive in self.fail_compress:
            return ExecResult.failure("tar: write error")
        self.files[archive] = b"archive"
        return ExecResult(success=True, out=[f"{archive} 1.2 MB"])

    async def test_archive(self, compression: CompressionType, archive: str) -> ExecResult:
        self._record("test_archive", compression, archive)
        if archive in self.fail_test:
            return ExecResult.failure("corrupt block detected")
        return ExecResult(success=True)

    async def decompress_archive(
        self,
        compression: CompressionType,
        archive: str,
        destination: str,
    ) -> ExecResult:
        self._record("decompress_archive", compression, archive, destination)
        if archive in self.fail_decompress or archive not in self.files:
            return ExecResult.failure(f"{archive}: No such file or directory")
        return ExecResult(success=True, out=["3 files"])


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def settings() -> BackupSettings:
    return BackupSettings(
        backup_root=ROOT, compression_type=CompressionType.ZSTD, backup_strategy=BackupStrategy.COVER,
    )
