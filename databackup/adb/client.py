"""
DataBackup — Async ADB Client
==============================

Robust asynchronous wrapper around the `adb` CLI.

Features:
  - Fully async (asyncio.create_subprocess_exec)
  - Automatic retry on connection errors (exponential backoff)
  - Structured results (ADBResult)
  - Root shell via `su -c`
  - Timeout protection for every command

Every command that reaches the device over USB goes through this class.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from databackup.config import TIMING

logger = logging.getLogger("databackup.adb")


# =============================================================================
# Exceptions
# =============================================================================

class ADBError(Exception):
    """Base exception for shell transport failures."""

    def __init__(self, message: str, returncode: int = -1, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class ADBConnectionError(ADBError):
    """Device not connected or adb daemon unreachable."""
    pass


class ADBTimeoutError(ADBError):
    """Command exceeded its timeout."""
    pass


# =============================================================================
# Result
# =============================================================================

@dataclass
class ADBResult:
    """Structured result of one shell command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""
    command: str = ""
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.returncode == 0


def wrap_root(command: str) -> str:
    """Wraps a command into `su -c "..."` with the quotes escaped."""
    escaped = command.replace("\\", "\\\\").replace('"', '\\"')
    return f'su -c "{escaped}"'


# =============================================================================
# ADB Client
# =============================================================================

class ADBClient:
    """
    Asynchronous ADB client with retry logic.

    Usage:
        adb = ADBClient()
        result = await adb.shell("id")
        result = await adb.shell("ls /data/user/0", root=True)
        await adb.exec_in("cat > /sdcard/x.json", b"{}")
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: int = TIMING.SHELL_COMMAND_TIMEOUT,
    ):
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._timeout = timeout

    # =========================================================================
    # Core: run a command with retry
    # =========================================================================

    async def _exec(
        self,
        args: list[str],
        timeout: Optional[int] = None,
        retries: Optional[int] = None,
        stdin: Optional[bytes] = None,
    ) -> ADBResult:
        """
        Runs `adb <args>` asynchronously with automatic retry.

        Args:
            args:    arguments for adb (e.g. ["shell", "id"])
            timeout: timeout in seconds (None = default)
            retries: number of attempts (None = default)
            stdin:   optional bytes fed to the command's stdin

        Returns:
            ADBResult with returncode, stdout, stderr

        Raises:
            ADBTimeoutError:     after the timeout
            ADBConnectionError:  after all retries failed
            ADBError:            adb binary missing
        """
        effective_timeout = timeout or self._timeout
        effective_retries = retries if retries is not None else self._max_retries
        cmd_str = f"adb {' '.join(args)}"
        last_error: Optional[Exception] = None

        for attempt in range(1, effective_retries + 1):
            try:
                logger.debug("ADB [%d/%d]: %s", attempt, effective_retries, cmd_str)

                proc = await asyncio.create_subprocess_exec(
                    "adb", *args,
                    stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )

                try:
                    stdout_raw, stderr_raw = await asyncio.wait_for(
                        proc.communicate(input=stdin),
                        timeout=effective_timeout,
                    )
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
                    raise ADBTimeoutError(
                        f"Timeout ({effective_timeout}s) on: {cmd_str}",
                        returncode=-1,
                    )

                stdout_str = stdout_raw.decode("utf-8", errors="replace")
                stderr_str = stderr_raw.decode("utf-8", errors="replace")

                result = ADBResult(
                    returncode=proc.returncode or 0,
                    stdout=stdout_str,
                    stderr=stderr_str,
                    command=cmd_str,
                    attempts=attempt,
                )

                # Connection errors are worth a retry
                if self._is_connection_error(stderr_str):
                    raise ADBConnectionError(
                        f"ADB connection error: {stderr_str.strip()}",
                        returncode=proc.returncode or -1,
                        stderr=stderr_str,
                    )

                if result.success:
                    if attempt > 1:
                        logger.info("ADB succeeded after %d attempts: %s", attempt, cmd_str)
                    return result

                # Non-zero exit without connection error: no retry
                logger.debug(
                    "ADB exit=%d: %s | stderr: %s",
                    result.returncode, cmd_str, stderr_str.strip()[:200],
                )
                return result

            except ADBTimeoutError:
                raise

            except ADBConnectionError as e:
                last_error = e
                if attempt < effective_retries:
                    delay = self._retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "ADB connection error (attempt %d/%d), retry in %.1fs: %s",
                        attempt, effective_retries, delay, e,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise

            except OSError as e:
                raise ADBError(f"adb not found: {e}") from e

        raise last_error or ADBError(f"ADB failed after {effective_retries} attempts")

    @staticmethod
    def _is_connection_error(stderr: str) -> bool:
        """Detects adb connection errors that justify a retry."""
        indicators = [
            "error: device not found",
            "error: no devices",
            "error: device offline",
            "error: closed",
            "cannot connect to daemon",
            "Connection refused",
            "adb: error: failed to get feature set",
            "protocol fault",
        ]
        stderr_lower = stderr.lower()
        return any(ind.lower() in stderr_lower for ind in indicators)

    # =========================================================================
    # Public API: Shell
    # =========================================================================

    async def shell(
        self,
        command: str,
        root: bool = False,
        timeout: Optional[int] = None,
    ) -> ADBResult:
        """
        Runs a shell command on the device.

        Args:
            command: shell command (e.g. "id", "pm path com.example")
            root:    True = run through `su -c "..."`
            timeout: optional timeout in seconds

        Returns:
            ADBResult (a non-zero exit is not raised)
        """
        # A command that already starts with `su ` must not be wrapped twice
        if root and command.lstrip().startswith("su "):
            root = False

        shell_cmd = wrap_root(command) if root else command
        return await self._exec(["shell", shell_cmd], timeout=timeout)

    # =========================================================================
    # Public API: Exec-In (bytes to the device via stdin)
    # =========================================================================

    async def exec_in(
        self,
        command: str,
        data: bytes,
        timeout: Optional[int] = None,
    ) -> ADBResult:
        """
        Streams `data` via stdin into a root shell command.

        Used to write index files:
            await adb.exec_in("cat > /sdcard/DataBackup/config/x.json", payload)
        """
        effective_timeout = timeout or TIMING.FILE_TRANSFER_TIMEOUT
        logger.debug("Exec-In: %d bytes -> %s", len(data), command)
        result = await self._exec(
            ["shell", wrap_root(command)],
            timeout=effective_timeout,
            retries=1,
            stdin=data,
        )
        result.command = f"exec-in: {command}"
        return result

    # =========================================================================
    # Public API: Device State
    # =========================================================================

    async def is_connected(self) -> bool:
        """Checks whether a device is connected and online."""
        try:
            result = await self._exec(["get-state"], timeout=5, retries=1)
            return result.success and "device" in result.stdout
        except ADBError:
            return False

    async def has_root(self) -> bool:
        """Checks whether root is available via su."""
        try:
            result = await self.shell("id", root=True, timeout=5)
            return result.success and "uid=0" in result.stdout
        except ADBError:
            return False
