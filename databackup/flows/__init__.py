from .app import BackupAppFlow, RestoreAppFlow
from .media import BackupMediaFlow, RestoreMediaFlow
from .monitor import RunMonitor
from .runner import RunSummary, TaskRunner

FLOWS: dict[str, type[TaskRunner]] = {
    flow.name: flow
    for flow in (BackupAppFlow, RestoreAppFlow, BackupMediaFlow, RestoreMediaFlow)
}

__all__ = [
    "FLOWS",
    "BackupAppFlow",
    "BackupMediaFlow",
    "RestoreAppFlow",
    "RestoreMediaFlow",
    "RunMonitor",
    "RunSummary",
    "TaskRunner",
]
