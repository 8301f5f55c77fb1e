"""
Local Shell Client — On-Device Replacement for ADBClient
=========================================================

Drop-in replacement for ADBClient that runs commands directly on the
device instead of over USB. Used when the server runs in Termux on the
phone itself (DATABACKUP_MODE=local).

All methods share ADBClient's signatures and return ADBResult, so the
gateway cannot tell the two apart.

Differences to ADBClient:
  - shell()         → su -c "..." / sh -c "..." via asyncio subprocess
  - exec_in()       → su -c "cmd" with stdin attached
  - is_connected()  → always True (we ARE the device)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from databackup.adb.client import ADBError, ADBResult, ADBTimeoutError
from databackup.config import TIMING

logger = logging.getLogger("databackup.adb.local")


class LocalShellClient:
    """
    On-device shell client.

    Requires root through Magisk/KernelSU `su`.
    """

    def __init__(
        self,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        timeout: int = TIMING.SHELL_COMMAND_TIMEOUT,
    ):
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._timeout = timeout

    async def is_connected(self) -> bool:
        """Always True: we run on the device."""
        return True

    # =========================================================================
    # Core: run a command
    # =========================================================================

    async def _run(
        self,
        args: list[str],
        cmd_str: str,
        timeout: int,
        stdin: Optional[bytes] = None,
    ) -> ADBResult:
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_retries + 1):
            try:
                logger.debug("[%d/%d] %s", attempt, self._max_retries, cmd_str)

                proc = await asyncio.create_subprocess_exec(
                    *args,
                    stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )

                try:
                    stdout_raw, stderr_raw = await asyncio.wait_for(
                        proc.communicate(input=stdin),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
                    raise ADBTimeoutError(
                        f"Timeout ({timeout}s): {cmd_str}",
                        returncode=-1,
                    )

                result = ADBResult(
                    returncode=proc.returncode or 0,
                    stdout=stdout_raw.decode("utf-8", errors="replace"),
                    stderr=stderr_raw.decode("utf-8", errors="replace"),
                    command=cmd_str,
                    attempts=attempt,
                )

                if result.success and attempt > 1:
                    logger.info("Succeeded after %d attempts: %s", attempt, cmd_str)
                return result

            except ADBTimeoutError:
                raise

            except OSError as e:
                last_error = ADBError(f"Process error: {e}")
                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_delay)
                    continue
                raise last_error

        raise last_error or ADBError("Shell failed after retries")

    async def shell(
        self,
        command: str,
        root: bool = False,
        timeout: Optional[int] = None,
    ) -> ADBResult:
        """
        Runs a shell command directly on the device.

        Args:
            command: shell command
            root:    True = run through su -c
            timeout: timeout in seconds
        """
        if root and command.lstrip().startswith("su "):
            root = False

        args = ["su", "-c", command] if root else ["sh", "-c", command]
        cmd_str = f"local:{'su' if root else 'sh'} {command[:80]}"

        return await self._run(args, cmd_str, timeout or self._timeout)

    # =========================================================================
    # Exec-In: bytes → root command stdin
    # =========================================================================

    async def exec_in(
        self,
        command: str,
        data: bytes,
        timeout: Optional[int] = None,
    ) -> ADBResult:
        """Streams `data` via stdin into a root shell command."""
        logger.debug("Exec-In: %d bytes -> %s", len(data), command)
        result = await self._run(
            ["su", "-c", command],
            f"exec-in: {command}",
            timeout or TIMING.FILE_TRANSFER_TIMEOUT,
            stdin=data,
        )
        return result

    async def has_root(self) -> bool:
        """Checks whether root is available via su."""
        try:
            result = await self.shell("id", root=True, timeout=5)
            return result.success and "uid=0" in result.stdout
        except ADBError:
            return False
