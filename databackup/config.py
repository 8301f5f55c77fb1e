"""
DataBackup: Central Configuration
==================================

Single source of truth for constants, device paths and run settings.
Values that differ per installation are read from environment variables
(prefix `DATABACKUP_`), everything else is a deterministic constant.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo

from databackup.models.index import BackupStrategy, CompressionType

logger = logging.getLogger("databackup.config")

# =============================================================================
# 0. Time zone
# =============================================================================

LOCAL_TZ = ZoneInfo(os.environ.get("DATABACKUP_TZ", "UTC"))

# =============================================================================
# 0b. Execution Mode: ADB (host + USB) or local (on-device, Termux)
# =============================================================================
# "adb"   = host drives the device via `adb shell su -c`
# "local" = server runs on the device itself, commands go through `su -c`
EXECUTION_MODE: str = os.environ.get("DATABACKUP_MODE", "adb")


def create_shell_client():
    """Factory: creates the shell transport matching EXECUTION_MODE."""
    if EXECUTION_MODE == "local":
        from databackup.adb.local_client import LocalShellClient
        return LocalShellClient()
    else:
        from databackup.adb.client import ADBClient
        return ADBClient()


def create_gateway():
    """Factory: privileged gateway on top of the configured shell transport.

    Use this everywhere instead of building a gateway by hand:
        from databackup.config import create_gateway
        gateway = create_gateway()
    """
    from databackup.adb.gateway import PrivilegedGateway
    return PrivilegedGateway(create_shell_client())


# =============================================================================
# 1. Project paths (host side)
# =============================================================================

PROJECT_ROOT = Path(__file__).resolve().parent.parent
LOG_FILE = PROJECT_ROOT / "databackup.log"

# =============================================================================
# 2. Device paths
# =============================================================================

BACKUP_ROOT = os.environ.get("DATABACKUP_ROOT", "/storage/emulated/0/DataBackup")

DATA_SUBDIR = "data"
MEDIA_SUBDIR = "media"
CONFIG_SUBDIR = "config"

# Per-user live targets of the data object types
PATH_USER = "/data/user/{user}"
PATH_USER_DE = "/data/user_de/{user}"
PATH_DATA = "/data/media/{user}/Android/data"
PATH_OBB = "/data/media/{user}/Android/obb"

# Media folders offered when the media index is still empty
MEDIA_STORAGE_ROOT = "/storage/emulated/0"
DEFAULT_MEDIA_FOLDERS = ["Pictures", "Download", "Music", "DCIM"]

# Staging area for APK installs
INSTALL_TMP_DIR = "/data/local/tmp/databackup"

# Display name for subjects found on disk but never seen in an index
NAME_MISSING = "(name missing)"

# Name of the single snapshot directory used by the Cover strategy
COVER_DATE = "Cover"

# Group ids owning external app storage (Android/data, Android/obb)
EXT_DATA_RW_GID = 1078
EXT_OBB_RW_GID = 1079

# Android multi-user uid stride
PER_USER_RANGE = 100000


# =============================================================================
# 3. Timing
# =============================================================================

class TIMING:
    """Timeouts owned by the shell transports."""
    SHELL_COMMAND_TIMEOUT = 30          # single shell command
    ARCHIVE_TIMEOUT = 3600              # tar/compress/extract pipelines
    INSTALL_TIMEOUT = 300               # pm install sessions
    FILE_TRANSFER_TIMEOUT = 60          # index read/write


# =============================================================================
# 4. Run settings
# =============================================================================

def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_choice(name: str, enum_type, default):
    """Reads an enum value from the environment.

    Raises:
        ValueError: value is not one of the enum's values
    """
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return enum_type(raw.strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"{name}={raw!r} is invalid (allowed: {allowed})") from None


@dataclass
class BackupSettings:
    """Settings of one backup/restore run.

    Built from the environment with `BackupSettings.from_env()`; tests
    construct it directly.
    """
    backup_root: str = BACKUP_ROOT
    backup_user: str = "0"
    restore_user: str = "0"
    compression_type: CompressionType = CompressionType.ZSTD
    backup_strategy: BackupStrategy = BackupStrategy.COVER
    test_archives: bool = True
    compatible_mode: bool = False       # busybox tar without --exclude
    security_context: str = ""          # "" = restorecon, else fixed context

    def __post_init__(self):
        # plain strings are accepted, unknown values raise ValueError
        self.compression_type = CompressionType(self.compression_type)
        self.backup_strategy = BackupStrategy(self.backup_strategy)

    @classmethod
    def from_env(cls) -> "BackupSettings":
        settings = cls(
            backup_root=os.environ.get("DATABACKUP_ROOT", BACKUP_ROOT),
            backup_user=os.environ.get("DATABACKUP_BACKUP_USER", "0"),
            restore_user=os.environ.get("DATABACKUP_RESTORE_USER", "0"),
            compression_type=_env_choice("DATABACKUP_COMPRESSION", CompressionType, CompressionType.ZSTD),
            backup_strategy=_env_choice("DATABACKUP_STRATEGY", BackupStrategy, BackupStrategy.COVER),
            test_archives=_env_bool("DATABACKUP_TEST_ARCHIVES", True),
            compatible_mode=_env_bool("DATABACKUP_COMPATIBLE_MODE", False),
            security_context=os.environ.get("DATABACKUP_SECURITY_CONTEXT", ""),
        )
        logger.debug("Settings: %s", settings)
        return settings

    # --- Derived paths ---

    @property
    def data_root(self) -> str:
        return f"{self.backup_root}/{DATA_SUBDIR}"

    @property
    def media_root(self) -> str:
        return f"{self.backup_root}/{MEDIA_SUBDIR}"

    @property
    def config_root(self) -> str:
        return f"{self.backup_root}/{CONFIG_SUBDIR}"

    @property
    def is_cover(self) -> bool:
        return self.backup_strategy == BackupStrategy.COVER

    def index_path(self, file_name: str) -> str:
        return f"{self.config_root}/{file_name}"


def user_target(object_type: str, user: str) -> str:
    """Live root directory of a data object type for one Android user."""
    templates = {
        "user": PATH_USER,
        "user_de": PATH_USER_DE,
        "data": PATH_DATA,
        "obb": PATH_OBB,
    }
    return templates[object_type].format(user=user)


# =============================================================================
# 5. FastAPI Server
# =============================================================================

API_HOST = os.environ.get("DATABACKUP_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("DATABACKUP_PORT", "8000"))
API_TITLE = "DataBackup"
API_VERSION = "1.0.0"
