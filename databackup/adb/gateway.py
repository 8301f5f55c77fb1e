"""
Privileged Execution Gateway
=============================

The only component that talks to the device. Wraps a shell transport
(ADBClient or LocalShellClient) and exposes the privileged filesystem,
package and archive primitives the engine needs.

Failure model:
  - Expected failures (non-zero exit, missing file, unknown package) are
    returned as values: ExecResult(success=False, ...), None, "" or False.
  - Transport exceptions (ADBError, ADBTimeoutError, ADBConnectionError,
    OSError) are caught here, logged and converted the same way.
    Nothing raised by the transport escapes this class.

Every command runs as root. Shell traffic is logged at DEBUG level:
    SHELL_IN:  <command>
    SHELL_OUT: <line>
"""

from __future__ import annotations

import logging
import posixpath
import re
import shlex
from dataclasses import dataclass, field
from typing import Optional

from databackup.adb.client import ADBError
from databackup.config import (
    EXT_DATA_RW_GID,
    EXT_OBB_RW_GID,
    INSTALL_TMP_DIR,
    PER_USER_RANGE,
    TIMING,
)
from databackup.models.index import CompressionType, ObjectType

logger = logging.getLogger("databackup.gateway")

# Paths excluded from data archives (dropped by Android anyway)
_DATA_EXCLUDES = ("cache", "code_cache", "lib", "no_backup", ".ota")


# =============================================================================
# Results
# =============================================================================

@dataclass
class ExecResult:
    """Outcome of one gateway operation."""
    success: bool
    out: list[str] = field(default_factory=list)
    code: int = 0

    @property
    def text(self) -> str:
        return "\n".join(self.out)

    @classmethod
    def failure(cls, message: str, code: int = -1) -> "ExecResult":
        return cls(success=False, out=[message], code=code)


@dataclass
class PackageDetails:
    """Fields parsed from `dumpsys package <name>`."""
    package_name: str
    version_name: str = ""
    version_code: str = ""
    first_install_time: str = ""


def q(value: str) -> str:
    """Shell-quotes one argument."""
    return shlex.quote(value)


# =============================================================================
# Gateway
# =============================================================================

class PrivilegedGateway:
    """
    Root command channel to the device.

    Usage:
        gateway = PrivilegedGateway(ADBClient())
        result = await gateway.execute("ls /data/user/0")
        if result.success:
            print(result.out)
    """

    def __init__(self, shell_client):
        self._shell = shell_client

    @property
    def shell_client(self):
        return self._shell

    # =========================================================================
    # Core
    # =========================================================================

    async def execute(self, command: str, timeout: Optional[int] = None) -> ExecResult:
        """
        Runs one root shell command.

        Args:
            command: shell command line
            timeout: transport timeout in seconds (None = transport default)

        Returns:
            ExecResult with success flag, stdout+stderr lines and exit code
        """
        logger.debug("SHELL_IN: %s", command)
        try:
            result = await self._shell.shell(command, root=True, timeout=timeout)
        except (ADBError, OSError) as e:
            logger.warning("Shell transport failed: %s | %s", command[:120], e)
            return ExecResult.failure(str(e))

        lines = [line for line in result.stdout.splitlines() if line.strip()]
        lines += [line for line in result.stderr.splitlines() if line.strip()]
        for line in lines:
            logger.debug("SHELL_OUT: %s", line)

        if result.returncode == 127:
            logger.warning("Command not found (exit 127): %s", command[:120])

        return ExecResult(success=result.success, out=lines, code=result.returncode)

    # =========================================================================
    # Files
    # =========================================================================

    async def read_file(self, path: str) -> Optional[str]:
        """File content as text, None if missing or unreadable."""
        logger.debug("SHELL_IN: cat %s", path)
        try:
            result = await self._shell.shell(
                f"cat {q(path)}", root=True, timeout=TIMING.FILE_TRANSFER_TIMEOUT,
            )
        except (ADBError, OSError) as e:
            logger.warning("read_file(%s) failed: %s", path, e)
            return None
        if not result.success:
            return None
        return result.stdout

    async def write_file(self, path: str, data: bytes) -> bool:
        """
        Writes `data` to `path` via a temp file + rename.

        A reader either sees the previous content or the complete new one.
        """
        tmp = f"{path}.tmp"
        parent = posixpath.dirname(path)
        command = f"mkdir -p {q(parent)} && cat > {q(tmp)} && mv -f {q(tmp)} {q(path)}"
        logger.debug("SHELL_IN: %s (%d bytes)", command, len(data))
        try:
            result = await self._shell.exec_in(command, data)
        except (ADBError, OSError) as e:
            logger.warning("write_file(%s) failed: %s", path, e)
            return False
        if not result.success:
            logger.warning("write_file(%s) exit=%d: %s", path, result.returncode, result.stderr.strip())
        return result.success

    async def exists(self, path: str) -> bool:
        return (await self.execute(f"ls -d {q(path)}")).success

    async def mkdir(self, path: str) -> bool:
        return (await self.execute(f"mkdir -p {q(path)}")).success

    async def find(self, root: str, pattern: str) -> Optional[list[str]]:
        """Paths of regular files under `root` whose name matches `pattern`.

        None if the listing failed (e.g. `root` is missing).
        """
        result = await self.execute(f"find {q(root)} -type f -name {q(pattern)}")
        if not result.success:
            return None
        prefix = root.rstrip("/") + "/"
        return [line.strip() for line in result.out if line.strip().startswith(prefix)]

    async def stat_size(self, path: str) -> Optional[int]:
        """Total size of a file or directory in bytes, None if missing."""
        result = await self.execute(f"du -sb {q(path)}")
        if not result.success or not result.out:
            return None
        try:
            return int(result.out[0].split()[0])
        except (ValueError, IndexError):
            return None

    async def delete_recursive(self, path: str) -> bool:
        result = await self.execute(f"rm -rf {q(path)}")
        if result.success:
            logger.info("Deleted: %s", path)
        return result.success

    # =========================================================================
    # Packages
    # =========================================================================

    async def get_apk_path(self, package: str, user_id: str) -> tuple[bool, str]:
        """Directory holding the package's base/split APKs."""
        result = await self.execute(f"pm path --user {user_id} {q(package)}")
        for line in result.out:
            if line.startswith("package:"):
                return True, posixpath.dirname(line[len("package:"):].strip())
        return False, ""

    async def set_install_env(self) -> ExecResult:
        """Disables install-time package verification."""
        return await self.execute(
            "settings put global verifier_verify_adb_installs 0; "
            "settings put global package_verifier_enable 0; "
            "settings put global package_verifier_user_consent -1"
        )

    async def install_package(
        self,
        archive_path: str,
        package: str,
        user_id: str,
    ) -> ExecResult:
        """
        Extracts an APK archive into a staging dir and installs it.

        One APK → `pm install`, several (splits) → install session.
        """
        compression = CompressionType.from_filename(archive_path)
        if compression is None:
            return ExecResult.failure(f"Unknown archive type: {archive_path}")

        staging = f"{INSTALL_TMP_DIR}/{package}"
        await self.execute(f"rm -rf {q(staging)}")
        extracted = await self.execute(
            f"set -o pipefail; mkdir -p {q(staging)} && {self._extract_pipeline(compression, archive_path, staging)}",
            timeout=TIMING.ARCHIVE_TIMEOUT,
        )
        if not extracted.success:
            return extracted

        listing = await self.execute(f"ls {q(staging)}")
        apks = sorted(name for name in listing.out if name.endswith(".apk"))
        if not apks:
            await self.execute(f"rm -rf {q(staging)}")
            return ExecResult.failure(f"No APK found in {archive_path}")

        if len(apks) == 1:
            result = await self.execute(
                f"pm install -r -t --user {user_id} {q(staging + '/' + apks[0])}",
                timeout=TIMING.INSTALL_TIMEOUT,
            )
        else:
            result = await self._install_session(staging, apks, user_id)

        await self.execute(f"rm -rf {q(staging)}")
        if result.success and any("Failure" in line for line in result.out):
            result.success = False
        return result

    async def _install_session(self, staging: str, apks: list[str], user_id: str) -> ExecResult:
        created = await self.execute(f"pm install-create -r -t --user {user_id}")
        match = re.search(r"\[(\d+)\]", created.text)
        if not created.success or match is None:
            return ExecResult.failure(f"install-create failed: {created.text}")
        session = match.group(1)

        for name in apks:
            written = await self.execute(
                f"pm install-write {session} {q(name)} {q(staging + '/' + name)}",
                timeout=TIMING.INSTALL_TIMEOUT,
            )
            if not written.success:
                await self.execute(f"pm install-abandon {session}")
                return written

        return await self.execute(f"pm install-commit {session}", timeout=TIMING.INSTALL_TIMEOUT)

    async def find_package(self, user_id: str, package: str) -> bool:
        """True if `package` is installed for `user_id`."""
        result = await self.execute(f"pm list packages --user {user_id} {q(package)}")
        return f"package:{package}" in (line.strip() for line in result.out)

    async def list_packages(self, user_id: str, system: bool = False) -> list[str]:
        """Installed third-party (or system) package names."""
        flag = "-s" if system else "-3"
        result = await self.execute(f"pm list packages {flag} --user {user_id}")
        if not result.success:
            return []
        return [
            line.strip()[len("package:"):]
            for line in result.out
            if line.strip().startswith("package:")
        ]

    async def query_package_details(self, user_id: str, package: str) -> Optional[PackageDetails]:
        result = await self.execute(f"dumpsys package {q(package)}")
        if not result.success:
            return None
        details = PackageDetails(package_name=package)
        for line in result.out:
            line = line.strip()
            if line.startswith("versionName=") and not details.version_name:
                details.version_name = line.split("=", 1)[1]
            elif line.startswith("versionCode=") and not details.version_code:
                details.version_code = line.split("=", 1)[1].split()[0]
            elif line.startswith("firstInstallTime=") and not details.first_install_time:
                details.first_install_time = line.split("=", 1)[1]
        if not details.version_code:
            return None
        return details

    async def query_installed_version(self, user_id: str, package: str) -> tuple[bool, str]:
        details = await self.query_package_details(user_id, package)
        if details is None:
            return False, ""
        return True, details.version_code

    async def _package_uid(self, package: str, user_id: str) -> Optional[int]:
        """Per-user uid of an installed package."""
        result = await self.execute(f"pm list packages -U --user {user_id} {q(package)}")
        for line in result.out:
            if line.strip().startswith(f"package:{package} ") and "uid:" in line:
                raw = line.split("uid:")[-1].split(",")[0].strip()
                if raw.isdigit():
                    app_id = int(raw) % PER_USER_RANGE
                    return int(user_id) * PER_USER_RANGE + app_id

        # Fallback: owner of the app's credential-encrypted data dir
        result = await self.execute(f"stat -c '%u' /data/user/{user_id}/{q(package)}")
        raw = result.text.strip("'").strip()
        if raw.isdigit() and int(raw) >= 10000:
            return int(raw)
        return None

    # =========================================================================
    # Security context & ownership
    # =========================================================================

    async def get_security_context(self, path: str) -> str:
        """SELinux context of `path`, "" if unavailable."""
        result = await self.execute(f"ls -Zd {q(path)}")
        if not result.success or not result.out:
            return ""
        return result.out[0].split()[0]

    async def set_owner_and_context(
        self,
        object_type: ObjectType,
        package: str,
        path: str,
        user_id: str,
        context: str = "",
    ) -> ExecResult:
        """
        Reapplies ownership and SELinux context after an extraction.

        Args:
            object_type: USER/USER_DE (uid:uid), DATA/OBB (uid:ext gid) or MEDIA
            package:     package name (ignored for MEDIA)
            path:        live target path
            user_id:     Android user id
            context:     fixed context to apply, "" = restorecon from policy
        """
        if object_type == ObjectType.MEDIA:
            return await self.execute(f"restorecon -RF {q(path)}")

        uid = await self._package_uid(package, user_id)
        if uid is None:
            return ExecResult.failure(f"Failed to get uid of {package}.")

        if object_type in (ObjectType.USER, ObjectType.USER_DE):
            gid = uid
        elif object_type == ObjectType.DATA:
            gid = EXT_DATA_RW_GID
        else:
            gid = EXT_OBB_RW_GID

        owned = await self.execute(f"chown -hR {uid}:{gid} {q(path)}")
        if not owned.success:
            return owned

        if context:
            return await self.execute(f"chcon -hR {q(context)} {q(path)}")
        return await self.execute(f"restorecon -RF {q(path)}")

    # =========================================================================
    # Archives
    # =========================================================================

    @staticmethod
    def _extract_pipeline(compression: CompressionType, archive: str, destination: str) -> str:
        if compression == CompressionType.TAR:
            return f"tar -xmpf {q(archive)} -C {q(destination)}"
        tool = "lz4" if compression == CompressionType.LZ4 else "zstd"
        return f"{tool} -d -c {q(archive)} | tar -xmpf - -C {q(destination)}"

    async def compress_archive(
        self,
        object_type: ObjectType,
        compression: CompressionType,
        parent: str,
        entry: str,
        archive: str,
        compatible_mode: bool = False,
    ) -> ExecResult:
        """
        Archives `parent/entry` (entry kept relative) into `archive`.

        Args:
            object_type:     selects the exclude list
            compression:     tar, lz4 or zstd
            parent:          directory tar changes into (-C)
            entry:           name inside parent, "." for the whole directory
            archive:         output file
            compatible_mode: True = no --exclude (busybox tar)
        """
        excludes = ""
        if not compatible_mode and object_type in (ObjectType.USER, ObjectType.USER_DE):
            excludes = " ".join(f"--exclude={q(entry + '/' + name)}" for name in _DATA_EXCLUDES) + " "
        elif not compatible_mode and object_type in (ObjectType.DATA, ObjectType.OBB):
            excludes = f"--exclude={q(entry + '/cache')} "

        await self.mkdir(posixpath.dirname(archive))
        if compression == CompressionType.TAR:
            command = f"tar {excludes}-cpf {q(archive)} -C {q(parent)} {q(entry)}"
        elif compression == CompressionType.LZ4:
            command = (
                f"set -o pipefail; tar {excludes}-cpf - -C {q(parent)} {q(entry)} "
                f"| lz4 -q -f - {q(archive)}"
            )
        else:
            command = (
                f"set -o pipefail; tar {excludes}-cpf - -C {q(parent)} {q(entry)} "
                f"| zstd -q -f -T0 -o {q(archive)}"
            )
        return await self.execute(command, timeout=TIMING.ARCHIVE_TIMEOUT)

    async def test_archive(self, compression: CompressionType, archive: str) -> ExecResult:
        if compression == CompressionType.TAR:
            command = f"tar -tf {q(archive)} > /dev/null"
        elif compression == CompressionType.LZ4:
            command = f"lz4 -t {q(archive)}"
        else:
            command = f"zstd -t {q(archive)}"
        return await self.execute(command, timeout=TIMING.ARCHIVE_TIMEOUT)

    async def decompress_archive(
        self,
        compression: CompressionType,
        archive: str,
        destination: str,
    ) -> ExecResult:
        """Extracts `archive` into `destination` (created if missing)."""
        command = f"set -o pipefail; mkdir -p {q(destination)} && {self._extract_pipeline(compression, archive, destination)}"
        return await self.execute(command, timeout=TIMING.ARCHIVE_TIMEOUT)
