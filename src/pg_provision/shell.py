"""Thin subprocess wrapper shared by the host collaborators."""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandResult:
    cmd: list[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandError(RuntimeError):
    """Raised when a command exits non-zero or cannot be started."""

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(str(self))

    @property
    def operation(self) -> str:
        return shlex.join(self.cmd)

    def __str__(self) -> str:  # noqa: D401 - simple representation
        message = f"'{self.operation}' exited with status {self.returncode}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        return message


def run(
    cmd: Sequence[str],
    *,
    check: bool = True,
    input_text: Optional[str] = None,
    input_bytes: Optional[bytes] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: float = 600.0,
) -> CommandResult:
    """Run ``cmd`` without a shell and capture its output."""

    command = list(cmd)
    merged_env = dict(os.environ)
    if env:
        merged_env.update(env)
    logger.debug("Running command: %s", shlex.join(command))
    started = time.monotonic()
    try:
        if input_bytes is not None:
            proc = subprocess.run(command, input=input_bytes, capture_output=True, env=merged_env, timeout=timeout)
            stdout = proc.stdout.decode("utf-8", errors="replace")
            stderr = proc.stderr.decode("utf-8", errors="replace")
        else:
            proc = subprocess.run(
                command,
                input=input_text,
                capture_output=True,
                text=True,
                env=merged_env,
                timeout=timeout,
            )
            stdout, stderr = proc.stdout, proc.stderr
    except FileNotFoundError as exc:
        raise CommandError(command, 127, str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(command, -1, f"timed out after {timeout:.0f}s") from exc

    duration = time.monotonic() - started
    result = CommandResult(command, proc.returncode, stdout or "", stderr or "", duration)
    logger.debug("Command %s finished with status %d in %.2fs", command[0], proc.returncode, duration)
    if check and not result.ok:
        raise CommandError(command, result.returncode, result.stderr)
    return result
