"""Sequential step executor for provisioning runs."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

from .backup import BackupError, BackupManager
from .filesystem import Filesystem
from .models import ProvisioningStep, RunContext, StepRollback, StepStatus
from .reporter import Reporter

logger = logging.getLogger(__name__)


class MutationError(RuntimeError):
    """Raised when a step's OS-level operation fails."""

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        step: Optional[str] = None,
        completed: Sequence[str] = (),
    ) -> None:
        self.operation = operation
        self.message = message
        self.step = step
        self.completed = list(completed)
        super().__init__(message)

    def __str__(self) -> str:  # noqa: D401 - simple representation
        prefix = f"Step '{self.step}' failed" if self.step else "Operation failed"
        text = f"{prefix} during '{self.operation}': {self.message}"
        if self.step:
            text += f" (completed: {', '.join(self.completed) if self.completed else 'none'})"
        return text


@contextmanager
def attempt(operation: str) -> Iterator[None]:
    """Label any failure inside the block with ``operation``."""
    try:
        yield
    except (MutationError, BackupError):
        raise
    except Exception as exc:  # noqa: BLE001 - every failure becomes a MutationError
        raise MutationError(getattr(exc, "operation", None) or operation, str(exc)) from exc


def restore_backups(fs: Filesystem, step: str) -> StepRollback:
    """Rollback putting back every snapshot taken for ``step``, newest first."""

    def _rollback(context: RunContext) -> None:
        if context.backup_root is None:
            raise MutationError(f"restore {step}", "run has no backup location")
        errors = BackupManager(fs, context.backup_root).restore_all(context.backups_for(step))
        if errors:
            raise MutationError(f"restore {step}", "; ".join(str(error) for error in errors))

    return _rollback


class StepExecutor:
    """Runs steps once each, in ordinal order, applying the mandatory/optional policy."""

    def __init__(self, backups: BackupManager, reporter: Reporter, *, compensate: bool = False) -> None:
        self._backups = backups
        self._reporter = reporter
        self._compensate_on_abort = compensate
        self._log = logger

    def run(self, steps: Sequence[ProvisioningStep], context: RunContext) -> RunContext:
        ordered = sorted(steps, key=lambda step: step.ordinal)
        context.register(ordered)
        executed: list[ProvisioningStep] = []

        for step in ordered:
            blocked = [name for name in step.depends_on if context.status_of(name) != StepStatus.SUCCEEDED]
            if blocked:
                record = context.transition(
                    step.name,
                    StepStatus.SKIPPED,
                    detail=f"dependency {', '.join(blocked)} did not succeed",
                )
                self._reporter.step_skipped(record)
                continue

            context.transition(step.name, StepStatus.RUNNING)
            self._reporter.step_started(step)

            try:
                self._snapshot(step, context)
            except BackupError as exc:
                record = context.transition(step.name, StepStatus.FAILED, operation=exc.operation, error=str(exc))
                exc.step = step.name
                exc.completed = context.completed_steps()
                self._reporter.step_failed(record, exc.completed, aborting=True)
                self._abort(executed, context)
                raise

            try:
                detail = step.action(context)
            except Exception as exc:  # noqa: BLE001 - policy decides whether to abort
                error = exc if isinstance(exc, MutationError) else MutationError(
                    getattr(exc, "operation", None) or step.name, str(exc)
                )
                record = context.transition(
                    step.name,
                    StepStatus.FAILED,
                    operation=error.operation,
                    error=error.message,
                )
                self._rollback(step, context)
                completed = context.completed_steps()
                if step.mandatory:
                    self._reporter.step_failed(record, completed, aborting=True)
                    self._abort(executed, context)
                    error.step = step.name
                    error.completed = completed
                    if error is exc:
                        raise
                    raise error from exc
                self._reporter.step_failed(record, completed, aborting=False)
                continue

            record = context.transition(step.name, StepStatus.SUCCEEDED, detail=detail)
            executed.append(step)
            self._reporter.step_succeeded(record)

        return context

    def _snapshot(self, step: ProvisioningStep, context: RunContext) -> None:
        for target in step.backups:
            handle = self._backups.snapshot_if_exists(target.path, step.name, target.kind)
            if handle is not None:
                context.add_backup(handle)

    def _rollback(self, step: ProvisioningStep, context: RunContext) -> None:
        if step.rollback is None:
            return
        try:
            self._log.info("Rolling back step '%s'", step.name)
            step.rollback(context)
        except Exception as exc:  # noqa: BLE001 - rollback failures are surfaced, not raised
            message = f"Rollback of step '{step.name}' failed: {exc}"
            context.rollback_errors.append(message)
            self._reporter.error("%s; manual intervention required", message)

    def _abort(self, executed: list[ProvisioningStep], context: RunContext) -> None:
        if not self._compensate_on_abort:
            return
        for step in reversed(executed):
            if step.rollback is None:
                continue
            self._reporter.info("Compensating for step '%s'", step.name)
            self._rollback(step, context)
