"""Domain models for provisioning runs."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional

if TYPE_CHECKING:
    from .backup import BackupHandle


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)


class ExitCode(IntEnum):
    OK = 0
    FAILED = 1
    WARNINGS = 2
    PREFLIGHT = 3
    LOCKED = 4
    INTERRUPTED = 130


class InvalidTransition(RuntimeError):
    """Raised when a step outcome would change after reaching a terminal state."""


StepAction = Callable[["RunContext"], Optional[str]]
StepRollback = Callable[["RunContext"], None]


@dataclass(frozen=True, slots=True)
class BackupTarget:
    """A path a step overwrites; ``kind`` is ``auto``, ``file``, ``link`` or ``ownership``."""

    path: str
    kind: str = "auto"


@dataclass(frozen=True, slots=True)
class ProvisioningStep:
    """One named unit of host mutation."""

    name: str
    ordinal: int
    action: StepAction
    mandatory: bool = True
    rollback: Optional[StepRollback] = None
    backups: tuple[BackupTarget, ...] = ()
    depends_on: tuple[str, ...] = ()
    description: str = ""


@dataclass(slots=True)
class StepRecord:
    """Outcome of one step within a run."""

    name: str
    ordinal: int
    mandatory: bool
    status: StepStatus = StepStatus.PENDING
    detail: Optional[str] = None
    operation: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


def new_run_id(started_at: datetime) -> str:
    return f"{started_at.strftime('%Y%m%d_%H%M%S')}-{os.getpid()}"


@dataclass(slots=True)
class RunContext:
    """State owned by a single provisioning run."""

    run_id: str
    plan: str
    params: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.now)
    steps: Dict[str, StepRecord] = field(default_factory=dict)
    backups: list["BackupHandle"] = field(default_factory=list)
    rollback_errors: list[str] = field(default_factory=list)
    notes: Dict[str, Any] = field(default_factory=dict)
    status: str = "pending"
    exit_code: Optional[int] = None
    finished_at: Optional[datetime] = None
    backup_root: Optional[str] = None

    @classmethod
    def new(cls, plan: str, params: Optional[Dict[str, Any]] = None) -> "RunContext":
        started = datetime.now().replace(microsecond=0)
        return cls(run_id=new_run_id(started), plan=plan, params=dict(params or {}), started_at=started)

    def register(self, steps: Iterable[ProvisioningStep]) -> None:
        for step in steps:
            if step.name not in self.steps:
                self.steps[step.name] = StepRecord(name=step.name, ordinal=step.ordinal, mandatory=step.mandatory)

    def record(self, name: str) -> StepRecord:
        try:
            return self.steps[name]
        except KeyError as exc:
            raise KeyError(f"Step '{name}' is not part of run {self.run_id}") from exc

    def transition(
        self,
        name: str,
        status: StepStatus,
        *,
        detail: Optional[str] = None,
        operation: Optional[str] = None,
        error: Optional[str] = None,
    ) -> StepRecord:
        record = self.record(name)
        if record.status.terminal:
            raise InvalidTransition(
                f"Step '{name}' already {record.status.value}; cannot become {status.value}"
            )
        if status == StepStatus.PENDING:
            raise InvalidTransition(f"Step '{name}' cannot return to pending")
        now = datetime.now()
        if status == StepStatus.RUNNING:
            if record.status == StepStatus.RUNNING:
                raise InvalidTransition(f"Step '{name}' is already running")
            record.started_at = now
        else:
            record.finished_at = now
        record.status = status
        if detail is not None:
            record.detail = detail
        if operation is not None:
            record.operation = operation
        if error is not None:
            record.error = error
        return record

    def status_of(self, name: str) -> StepStatus:
        return self.record(name).status

    def completed_steps(self) -> list[str]:
        ordered = sorted(self.steps.values(), key=lambda item: item.ordinal)
        return [item.name for item in ordered if item.status == StepStatus.SUCCEEDED]

    def failed_steps(self, *, mandatory: Optional[bool] = None) -> list[str]:
        ordered = sorted(self.steps.values(), key=lambda item: item.ordinal)
        return [
            item.name
            for item in ordered
            if item.status == StepStatus.FAILED and (mandatory is None or item.mandatory == mandatory)
        ]

    def running_step(self) -> Optional[str]:
        for item in self.steps.values():
            if item.status == StepStatus.RUNNING:
                return item.name
        return None

    def add_backup(self, handle: "BackupHandle") -> None:
        self.backups.append(handle)

    def backups_for(self, step: str) -> list["BackupHandle"]:
        return [handle for handle in self.backups if handle.step == step]
