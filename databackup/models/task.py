"""
Task & Object Models
=====================

Runtime records of one backup/restore run. Not persisted.

  ProcessingTask  — one per subject in the worklist
  ProcessObject   — one per object step (APP, USER, USER_DE, DATA, OBB)
  StatusEvent     — progress/failure report of one object step
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from databackup.models.index import APP_OBJECTS, ObjectType


class ProcessState(str, Enum):
    """State of a task or an object step."""
    WAITING = "waiting"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"  # objects only: skipped because a prerequisite failed


class ProcessStatus(str, Enum):
    """Kinds of status events emitted per object step."""
    COMPRESSING = "compressing"
    DECOMPRESSING = "decompressing"
    INSTALLING_APK = "installing_apk"
    SETTING_SECURITY_CONTEXT = "setting_security_context"
    TESTING = "testing"
    SHOW_TOTAL = "show_total"
    SKIP = "skip"
    ERROR = "error"
    FINISHED = "finished"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessStatus.FINISHED, ProcessStatus.ERROR)


_TITLES = {
    ProcessStatus.COMPRESSING: "Compressing",
    ProcessStatus.DECOMPRESSING: "Decompressing",
    ProcessStatus.INSTALLING_APK: "Installing",
    ProcessStatus.SETTING_SECURITY_CONTEXT: "Setting SELinux context",
    ProcessStatus.TESTING: "Testing",
    ProcessStatus.SKIP: "Skipped",
    ProcessStatus.ERROR: "Error",
    ProcessStatus.FINISHED: "Finished",
}

READY_TITLE = "Ready"
READY_SUBTITLE = "Please wait"


@dataclass(frozen=True)
class StatusEvent:
    status: ProcessStatus
    detail: str = ""


@dataclass
class ProcessObject:
    """Live state of one object step."""
    type: ObjectType
    state: ProcessState = ProcessState.WAITING
    visible: bool = False
    title: str = READY_TITLE
    subtitle: str = READY_SUBTITLE
    last_status: Optional[ProcessStatus] = None

    def reset(self) -> None:
        self.state = ProcessState.WAITING
        self.visible = False
        self.title = READY_TITLE
        self.subtitle = READY_SUBTITLE
        self.last_status = None

    def apply(self, event: StatusEvent) -> None:
        """Updates the display fields. The state is set by the executor."""
        self.last_status = event.status
        if event.status == ProcessStatus.SHOW_TOTAL:
            if event.detail:
                self.subtitle = event.detail
            return
        self.title = _TITLES.get(event.status, self.title)
        if event.detail or event.status.is_terminal:
            self.subtitle = event.detail

    def mark_error(self, reason: str) -> None:
        self.state = ProcessState.ERROR
        self.apply(StatusEvent(ProcessStatus.ERROR, reason))

    def snapshot(self) -> "ProcessObject":
        """Independent copy for display once the task completed."""
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "state": self.state.value,
            "visible": self.visible,
            "title": self.title,
            "subtitle": self.subtitle,
        }


def new_app_objects() -> list[ProcessObject]:
    return [ProcessObject(type=t) for t in APP_OBJECTS]


def new_media_objects() -> list[ProcessObject]:
    return [ProcessObject(type=ObjectType.MEDIA)]


@dataclass
class ProcessingTask:
    """One subject of the worklist."""
    subject: str
    display_name: str
    select_app: bool = False
    select_data: bool = False
    snapshot_date: str = ""
    target_path: str = ""  # media: live folder
    state: ProcessState = ProcessState.WAITING
    objects: list[ProcessObject] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "display_name": self.display_name,
            "snapshot_date": self.snapshot_date,
            "state": self.state.value,
            "objects": [o.to_dict() for o in self.objects],
        }
