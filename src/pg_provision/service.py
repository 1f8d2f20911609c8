"""Run orchestration: preflight, execution, verification and the exit decision."""
from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .backup import BackupError, BackupManager, RestoreError
from .host import Host
from .lock import RunLock
from .models import ExitCode, RunContext, StepStatus
from .preflight import PreflightChecker, PreflightError, Requirements
from .registry import StepRegistry
from .reporter import Reporter
from .state import RunStore
from .verification import Expectations, VerificationEngine, VerificationResult
from .workflow import MutationError, StepExecutor

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


class RunInterrupted(KeyboardInterrupt):
    """Raised inside a run when the process receives a termination signal."""

    def __init__(self, signum: int) -> None:
        self.signum = signum
        try:
            self.signame = signal.Signals(signum).name
        except ValueError:
            self.signame = f"signal {signum}"
        super().__init__(self.signame)


@contextmanager
def interrupt_on_signals(signals: tuple[int, ...] = (signal.SIGTERM, signal.SIGHUP)) -> Iterator[None]:
    """Turn termination signals into RunInterrupted for the duration of a run."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: Any) -> None:
        raise RunInterrupted(signum)

    previous = {sig: signal.signal(sig, _handler) for sig in signals}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@dataclass(slots=True)
class ProvisioningPlan:
    name: str
    registry: StepRegistry
    requirements: Requirements
    expectations: Expectations
    params: dict[str, Any] = field(default_factory=dict)
    confirmation: Optional[str] = None


@dataclass(slots=True)
class RunReport:
    context: RunContext
    exit_code: ExitCode
    run_dir: Path
    verification: Optional[VerificationResult] = None
    error: Optional[str] = None

    @property
    def status(self) -> str:
        return self.context.status


@dataclass(slots=True)
class RestoreReport:
    run_id: str
    restored: int
    errors: list[str]


class ProvisioningService:
    """Coordinates one provisioning run against a host."""

    def __init__(
        self,
        host: Host,
        store: RunStore,
        lock: Optional[RunLock] = None,
        *,
        confirm: Optional[Confirm] = None,
        compensate: bool = False,
        echo: bool = True,
    ) -> None:
        self._host = host
        self._store = store
        self._lock = lock
        self._confirm = confirm
        self._compensate = compensate
        self._echo = echo

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self._lock is None:
            yield
            return
        with self._lock:
            yield

    def run(self, plan: ProvisioningPlan) -> RunReport:
        with self._locked():
            return self._run(plan)

    def _run(self, plan: ProvisioningPlan) -> RunReport:
        context = RunContext.new(plan.name, plan.params)
        run_dir = self._store.create(context.run_id)
        context.run_id = run_dir.name
        reporter = Reporter(context.run_id, self._store.log_path(context.run_id), echo=self._echo)
        backups = BackupManager(self._host.fs, str(self._store.backup_root(context.run_id)))
        context.backup_root = backups.root
        report = RunReport(context=context, exit_code=ExitCode.FAILED, run_dir=run_dir)

        try:
            with interrupt_on_signals():
                reporter.banner(plan.name, plan.params)
                steps = plan.registry.ordered()
                context.register(steps)

                checker = PreflightChecker(self._host.directory, self._host.fs, self._host.services)
                try:
                    checker.check(plan.requirements)
                except PreflightError as exc:
                    reporter.error("Preflight check failed: %s", exc)
                    report.error = str(exc)
                    return self._finish(report, reporter, ExitCode.PREFLIGHT, "preflight_failed")
                reporter.success("All prerequisites passed")

                if plan.confirmation is not None and not self._confirmed(plan.confirmation):
                    reporter.info("Run cancelled by operator; nothing was changed")
                    return self._finish(report, reporter, ExitCode.OK, "cancelled")

                executor = StepExecutor(backups, reporter, compensate=self._compensate)
                try:
                    executor.run(steps, context)
                except (MutationError, BackupError) as exc:
                    report.error = str(exc)
                    return self._finish(report, reporter, ExitCode.FAILED, "failed")

                engine = VerificationEngine(
                    self._host.fs,
                    self._host.services,
                    probe=self._host.probe,
                    directory=self._host.directory,
                )
                report.verification = engine.verify(context, plan.expectations)
                reporter.verification(report.verification)

                failure = report.verification.failure()
                optional_failures = context.failed_steps(mandatory=False)
                if failure is not None or optional_failures:
                    if failure is not None:
                        report.error = str(failure)
                    return self._finish(report, reporter, ExitCode.WARNINGS, "completed_with_warnings")
                return self._finish(report, reporter, ExitCode.OK, "succeeded")
        except KeyboardInterrupt as exc:
            reason = exc.signame if isinstance(exc, RunInterrupted) else "SIGINT"
            running = context.running_step()
            if running is not None:
                context.transition(running, StepStatus.FAILED, error=f"interrupted by {reason}")
            report.error = f"Interrupted by {reason}"
            reporter.error("Run interrupted by %s; completed steps were not rolled back", reason)
            return self._finish(report, reporter, ExitCode.INTERRUPTED, "interrupted")
        finally:
            self._store.save(context)
            reporter.close()

    def _confirmed(self, prompt: str) -> bool:
        if self._confirm is None:
            logger.warning("Confirmation required but no prompt available; refusing to proceed")
            return False
        return bool(self._confirm(prompt))

    def _finish(self, report: RunReport, reporter: Reporter, code: ExitCode, status: str) -> RunReport:
        report.exit_code = code
        report.context.exit_code = int(code)
        report.context.status = status
        report.context.finished_at = datetime.now()
        reporter.summary(report.context)
        return report

    def restore_run(self, run_id: str) -> RestoreReport:
        """Put back every snapshot of a recorded run, newest first."""
        context = self._store.get(run_id)
        if context is None:
            raise ValueError(f"No recorded run '{run_id}' under {self._store.root}")
        backups = BackupManager(self._host.fs, str(self._store.backup_root(run_id)))
        with self._locked():
            errors: list[RestoreError] = backups.restore_all(context.backups)
        messages = [str(error) for error in errors]
        return RestoreReport(run_id=run_id, restored=len(context.backups) - len(errors), errors=messages)
