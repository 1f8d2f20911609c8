"""Package manager collaborators for Debian/Ubuntu (apt) and CentOS/RHEL (dnf)."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import requests

from .shell import CommandError, run

logger = logging.getLogger(__name__)

_NONINTERACTIVE = {"DEBIAN_FRONTEND": "noninteractive"}


class PackageError(RuntimeError):
    """Raised when packages or repositories cannot be installed."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"{operation}: {message}")


@dataclass(frozen=True, slots=True)
class RepositorySpec:
    name: str
    url: str
    key_url: str
    keyring: str
    list_file: str
    component: str = "main"
    suite_suffix: str = "-pgdg"


class PackageManager(Protocol):
    def add_repository(self, spec: RepositorySpec) -> bool: ...

    def install(self, packages: Sequence[str]) -> None: ...


def read_os_codename(os_release: str = "/etc/os-release") -> str:
    """Return VERSION_CODENAME from os-release (what ``lsb_release -cs`` prints)."""
    with open(os_release, encoding="utf-8") as handle:
        for line in handle:
            key, _, value = line.strip().partition("=")
            if key in ("VERSION_CODENAME", "UBUNTU_CODENAME") and value:
                return value.strip('"')
    raise PackageError("read os-release", f"no VERSION_CODENAME in {os_release}")


class AptPackageManager:
    """Installs packages with apt-get after configuring a signed repository."""

    def __init__(self, codename: Optional[str] = None, timeout: float = 30.0) -> None:
        self._codename = codename
        self._timeout = timeout

    def repository_line(self, spec: RepositorySpec) -> str:
        codename = self._codename or read_os_codename()
        return f"deb [signed-by={spec.keyring}] {spec.url} {codename}{spec.suite_suffix} {spec.component}\n"

    def add_repository(self, spec: RepositorySpec) -> bool:
        """Configure ``spec``; return ``False`` when it was already in place."""
        line = self.repository_line(spec)
        if os.path.exists(spec.keyring) and os.path.exists(spec.list_file):
            with open(spec.list_file, encoding="utf-8") as handle:
                if handle.read() == line:
                    logger.info("Repository '%s' already configured", spec.name)
                    return False

        logger.info("Fetching signing key for repository '%s' from %s", spec.name, spec.key_url)
        try:
            response = requests.get(spec.key_url, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise PackageError(f"GET {spec.key_url}", str(exc)) from exc

        try:
            run(["gpg", "--dearmor", "--yes", "-o", spec.keyring], input_bytes=response.content)
        except CommandError as exc:
            raise PackageError(exc.operation, exc.stderr or str(exc)) from exc

        with open(spec.list_file, "w", encoding="utf-8") as handle:
            handle.write(line)
        logger.info("Wrote repository definition %s", spec.list_file)
        return True

    def install(self, packages: Sequence[str]) -> None:
        if not packages:
            return
        try:
            run(["apt-get", "update"], env=_NONINTERACTIVE)
            run(["apt-get", "install", "-y", *packages], env=_NONINTERACTIVE)
        except CommandError as exc:
            raise PackageError(exc.operation, exc.stderr or str(exc)) from exc


class DnfPackageManager:
    """Installs packages with dnf; repositories are added from a release RPM URL."""

    def add_repository(self, spec: RepositorySpec) -> bool:
        if run(["rpm", "-q", spec.name], check=False).ok:
            logger.info("Repository package '%s' already installed", spec.name)
            return False
        try:
            run(["dnf", "install", "-y", spec.url])
            run(["dnf", "-qy", "module", "disable", "postgresql"], check=False)
        except CommandError as exc:
            raise PackageError(exc.operation, exc.stderr or str(exc)) from exc
        return True

    def install(self, packages: Sequence[str]) -> None:
        if not packages:
            return
        try:
            run(["dnf", "install", "-y", *packages])
        except CommandError as exc:
            raise PackageError(exc.operation, exc.stderr or str(exc)) from exc
