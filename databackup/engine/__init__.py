from .archive import ArchivePipeline, CompressResult
from .backuper import BackupExecutor
from .executor import StepOutcome
from .restorer import RestoreExecutor
from .scanner import ReconciliationScanner

__all__ = [
    "ArchivePipeline",
    "BackupExecutor",
    "CompressResult",
    "ReconciliationScanner",
    "RestoreExecutor",
    "StepOutcome",
]
