"""Post-run assertions about the provisioned host.

Every check runs even when an earlier one failed; the result is diagnostic and
never aborts or mutates anything.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .accounts import DirectoryService
from .filesystem import Filesystem
from .models import RunContext
from .postgres import ConnectivityProbe, Endpoint
from .systemd import ServiceManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CheckResult:
    name: str
    passed: bool
    reason: str


class VerificationFailure(RuntimeError):
    """Post-conditions not met; reported, never raised mid-run."""

    def __init__(self, failures: list[CheckResult]) -> None:
        self.failures = failures
        names = ", ".join(check.name for check in failures)
        super().__init__(f"{len(failures)} verification check(s) failed: {names}")


@dataclass(slots=True)
class VerificationResult:
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]

    def failure(self) -> Optional[VerificationFailure]:
        failures = self.failures
        return VerificationFailure(failures) if failures else None


@dataclass(frozen=True, slots=True)
class DirectoryExpectation:
    path: str
    owner: str
    group: str
    mode: Optional[int] = None


@dataclass(frozen=True, slots=True)
class AccountExpectation:
    name: str
    uid: int
    gid: int


@dataclass(frozen=True, slots=True)
class OrphanExpectation:
    """No path under ``roots`` may still carry ``uid`` or ``gid``; ``None`` skips that id."""

    roots: tuple[str, ...]
    uid: Optional[int]
    gid: Optional[int]
    exclude: tuple[str, ...] = ()
    sample: int = 5


@dataclass(slots=True)
class Expectations:
    directories: tuple[DirectoryExpectation, ...] = ()
    services: tuple[str, ...] = ()
    endpoint: Optional[Endpoint] = None
    account: Optional[AccountExpectation] = None
    orphans: Optional[OrphanExpectation] = None


class _CheckFailed(Exception):
    pass


class VerificationEngine:
    def __init__(
        self,
        fs: Filesystem,
        services: ServiceManager,
        probe: Optional[ConnectivityProbe] = None,
        directory: Optional[DirectoryService] = None,
    ) -> None:
        self._fs = fs
        self._services = services
        self._probe = probe
        self._directory = directory

    def verify(self, context: RunContext, expectations: Expectations) -> VerificationResult:
        logger.info("Verifying run %s", context.run_id)
        result = VerificationResult()

        def record(name: str, check: Callable[[], str]) -> None:
            try:
                reason = check()
            except _CheckFailed as exc:
                result.checks.append(CheckResult(name, False, str(exc)))
            except Exception as exc:  # noqa: BLE001 - a crashing check is a failed check
                result.checks.append(CheckResult(name, False, f"{type(exc).__name__}: {exc}"))
            else:
                result.checks.append(CheckResult(name, True, reason))

        for directory in expectations.directories:
            record(f"directory_exists:{directory.path}", lambda d=directory: self._directory_exists(d))
        for directory in expectations.directories:
            record(f"ownership:{directory.path}", lambda d=directory: self._ownership(d))
        for service in expectations.services:
            record(f"service_enabled:{service}", lambda s=service: self._service_enabled(s))
            record(f"service_active:{service}", lambda s=service: self._service_active(s))
        if expectations.endpoint is not None:
            record("connectivity", lambda: self._connectivity(expectations.endpoint))
        if expectations.account is not None:
            record(f"account_ids:{expectations.account.name}", lambda: self._account(expectations.account))
        if expectations.orphans is not None:
            record("no_old_ownership", lambda: self._orphans(expectations.orphans))

        return result

    def _directory_exists(self, expected: DirectoryExpectation) -> str:
        if not self._fs.exists(expected.path):
            raise _CheckFailed(f"{expected.path} not found")
        if not self._fs.is_dir(expected.path):
            raise _CheckFailed(f"{expected.path} is not a directory")
        return f"{expected.path} exists"

    def _ownership(self, expected: DirectoryExpectation) -> str:
        st = self._fs.stat(expected.path)
        problems = []
        if (st.owner, st.group) != (expected.owner, expected.group):
            problems.append(f"owned by {st.owner}:{st.group}, expected {expected.owner}:{expected.group}")
        if expected.mode is not None and st.mode != expected.mode:
            problems.append(f"mode {st.mode:04o}, expected {expected.mode:04o}")
        if problems:
            raise _CheckFailed(f"{expected.path} " + "; ".join(problems))
        mode = f" mode {st.mode:04o}" if expected.mode is not None else ""
        return f"{expected.path} owned by {st.owner}:{st.group}{mode}"

    def _service_enabled(self, service: str) -> str:
        if not self._services.is_enabled(service):
            raise _CheckFailed(f"service '{service}' is not enabled")
        return f"service '{service}' is enabled"

    def _service_active(self, service: str) -> str:
        if not self._services.is_active(service):
            raise _CheckFailed(f"service '{service}' is not active")
        return f"service '{service}' is active"

    def _connectivity(self, endpoint: Endpoint) -> str:
        if self._probe is None:
            raise _CheckFailed("no connectivity probe configured")
        self._probe.try_connect(endpoint)
        return f"connected to {endpoint.describe()}"

    def _account(self, expected: AccountExpectation) -> str:
        if self._directory is None:
            raise _CheckFailed("no directory service configured")
        identity = self._directory.lookup_user(expected.name)
        if identity is None:
            raise _CheckFailed(f"user '{expected.name}' not found")
        if (identity.uid, identity.gid) != (expected.uid, expected.gid):
            raise _CheckFailed(
                f"'{expected.name}' has uid/gid {identity.uid}/{identity.gid}, expected {expected.uid}/{expected.gid}"
            )
        return f"'{expected.name}' has uid/gid {identity.uid}/{identity.gid}"

    def _orphans(self, expected: OrphanExpectation) -> str:
        leftovers: list[str] = []
        unreadable = 0

        def count_error(_: OSError) -> None:
            nonlocal unreadable
            unreadable += 1

        for root in expected.roots:
            for path in self._fs.walk(root, exclude=expected.exclude, on_error=count_error):
                try:
                    st = self._fs.stat(path)
                except OSError:
                    unreadable += 1
                    continue
                if (expected.uid is not None and st.uid == expected.uid) or (
                    expected.gid is not None and st.gid == expected.gid
                ):
                    leftovers.append(path)
        owners = " or ".join(
            f"{label} {value}" for label, value in (("uid", expected.uid), ("gid", expected.gid)) if value is not None
        )
        if leftovers:
            shown = ", ".join(leftovers[: expected.sample])
            raise _CheckFailed(f"{len(leftovers)} path(s) still owned by {owners}: {shown}")
        suffix = f" ({unreadable} unreadable entries skipped)" if unreadable else ""
        return f"no paths owned by {owners}{suffix}"
