"""DataBackup: backup/restore orchestration for rooted Android devices."""

__version__ = "1.0.0"
