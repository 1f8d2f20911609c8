"""Timestamped progress output for a provisioning run."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional, Sequence, TextIO

from .models import ProvisioningStep, RunContext, StepRecord

if TYPE_CHECKING:
    from .verification import VerificationResult

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LINE_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Reporter:
    """Writes INFO/WARNING/ERROR/SUCCESS lines to the run log and stderr."""

    def __init__(
        self,
        run_id: str,
        log_path: Optional[Path] = None,
        *,
        stream: Optional[TextIO] = None,
        echo: bool = True,
    ) -> None:
        self._logger = logging.getLogger(f"pg_provision.run.{run_id}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        formatter = logging.Formatter(LINE_FORMAT, datefmt=DATE_FORMAT)
        self._handlers: list[logging.Handler] = []
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
        if echo:
            self._handlers.append(logging.StreamHandler(stream))
        for handler in self._handlers:
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)
        self.log_path = log_path

    def __enter__(self) -> "Reporter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        for handler in self._handlers:
            self._logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

    def info(self, message: str, *args: Any) -> None:
        self._logger.info(message, *args)

    def warning(self, message: str, *args: Any) -> None:
        self._logger.warning(message, *args)

    def error(self, message: str, *args: Any) -> None:
        self._logger.error(message, *args)

    def success(self, message: str, *args: Any) -> None:
        self._logger.log(SUCCESS, message, *args)

    def banner(self, plan: str, params: Mapping[str, Any]) -> None:
        self.info("Starting '%s' run", plan)
        width = max((len(key) for key in params), default=0)
        for key, value in params.items():
            self.info("  %s : %s", key.ljust(width, "."), value)

    def step_started(self, step: ProvisioningStep) -> None:
        self.info("Running step %d '%s'%s", step.ordinal, step.name, f": {step.description}" if step.description else "")

    def step_succeeded(self, record: StepRecord) -> None:
        if record.detail:
            self.success("Step '%s' succeeded (%s)", record.name, record.detail)
        else:
            self.success("Step '%s' succeeded", record.name)

    def step_skipped(self, record: StepRecord) -> None:
        self.warning("Step '%s' skipped: %s", record.name, record.detail or "not attempted")

    def step_failed(self, record: StepRecord, completed: Sequence[str], *, aborting: bool) -> None:
        if not aborting:
            self.warning(
                "Optional step '%s' failed during '%s': %s; continuing",
                record.name,
                record.operation or "unknown operation",
                record.error,
            )
            return
        self.error("Step '%s' failed; aborting run", record.name)
        self.error("  operation : %s", record.operation or "unknown operation")
        self.error("  error     : %s", record.error)
        self.error("  completed : %s", ", ".join(completed) if completed else "(none)")

    def verification(self, result: "VerificationResult") -> None:
        for check in result.checks:
            if check.passed:
                self.success("Check '%s' passed: %s", check.name, check.reason)
            else:
                self.error("Check '%s' failed: %s", check.name, check.reason)

    def summary(self, context: RunContext) -> None:
        completed = context.completed_steps()
        failed = context.failed_steps()
        self.info("Run %s finished with status '%s' (exit code %s)", context.run_id, context.status, context.exit_code)
        self.info("Completed steps: %s", ", ".join(completed) if completed else "(none)")
        if failed:
            self.warning("Failed steps: %s", ", ".join(failed))
        for message in context.rollback_errors:
            self.error("Manual intervention required: %s", message)
        if self.log_path is not None:
            self.info("Log file saved at: %s", self.log_path)
