"""Read-only checks gating entry to a provisioning run."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .accounts import DirectoryService
from .filesystem import Filesystem
from .systemd import ServiceManager

logger = logging.getLogger(__name__)


class PreflightKind(str, Enum):
    NOT_ROOT = "not_root"
    WRONG_USER = "wrong_user"
    ACCOUNT_MISSING = "account_missing"
    SERVICE_ACTIVE = "service_active"
    UID_IN_USE = "uid_in_use"
    GID_IN_USE = "gid_in_use"
    PATH_MISSING = "path_missing"


class PreflightError(RuntimeError):
    """Raised when a precondition is unmet; nothing has been mutated yet."""

    def __init__(self, kind: PreflightKind, detail: str) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"[{kind.value}] {detail}")


@dataclass(slots=True)
class Requirements:
    require_root: bool = True
    forbidden_user: Optional[str] = None
    account: Optional[str] = None
    inactive_services: tuple[str, ...] = ()
    free_uids: tuple[int, ...] = ()
    free_gids: tuple[int, ...] = ()
    required_paths: tuple[str, ...] = ()


class PreflightChecker:
    def __init__(self, directory: DirectoryService, fs: Filesystem, services: ServiceManager) -> None:
        self._directory = directory
        self._fs = fs
        self._services = services

    def check(self, requirements: Requirements) -> None:
        """Raise PreflightError for the first unmet requirement."""
        if requirements.require_root and self._directory.effective_uid() != 0:
            raise PreflightError(PreflightKind.NOT_ROOT, "This command must be run as root")

        if requirements.forbidden_user:
            current = self._directory.current_user()
            if current == requirements.forbidden_user:
                raise PreflightError(
                    PreflightKind.WRONG_USER,
                    f"Do not run as '{current}'; use root or sudo",
                )

        if requirements.account and self._directory.lookup_user(requirements.account) is None:
            raise PreflightError(PreflightKind.ACCOUNT_MISSING, f"User '{requirements.account}' does not exist")

        for service in requirements.inactive_services:
            if self._services.is_active(service):
                raise PreflightError(
                    PreflightKind.SERVICE_ACTIVE,
                    f"Service '{service}' is still running; stop it first",
                )

        # Ids already held by the account itself count as free.
        for uid in requirements.free_uids:
            holder = self._directory.lookup_user(uid)
            if holder is not None and holder.name != requirements.account:
                raise PreflightError(PreflightKind.UID_IN_USE, f"UID {uid} is already in use by '{holder.name}'")

        for gid in requirements.free_gids:
            group = self._directory.lookup_group(gid)
            if group is not None and group.name != requirements.account:
                raise PreflightError(PreflightKind.GID_IN_USE, f"GID {gid} is already in use by '{group.name}'")

        for path in requirements.required_paths:
            if not self._fs.exists(path):
                raise PreflightError(PreflightKind.PATH_MISSING, f"Required path {path} does not exist")

        logger.debug("All preflight requirements satisfied")
