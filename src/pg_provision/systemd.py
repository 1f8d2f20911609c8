"""Service manager collaborators (systemd and SysV ``service``)."""
from __future__ import annotations

import logging
from typing import Protocol

from .shell import run

logger = logging.getLogger(__name__)


class ServiceManager(Protocol):
    def enable(self, name: str) -> None: ...

    def start(self, name: str) -> None: ...

    def stop(self, name: str) -> None: ...

    def is_active(self, name: str) -> bool: ...

    def is_enabled(self, name: str) -> bool: ...


class SystemdServiceManager:
    """Drives units through ``systemctl``."""

    def enable(self, name: str) -> None:
        logger.info("Enabling service '%s'", name)
        run(["systemctl", "enable", name])

    def start(self, name: str) -> None:
        logger.info("Starting service '%s'", name)
        run(["systemctl", "start", name])

    def stop(self, name: str) -> None:
        logger.info("Stopping service '%s'", name)
        run(["systemctl", "stop", name])

    def is_active(self, name: str) -> bool:
        return run(["systemctl", "is-active", "--quiet", name], check=False).ok

    def is_enabled(self, name: str) -> bool:
        return run(["systemctl", "is-enabled", "--quiet", name], check=False).ok


class SysvServiceManager:
    """Drives init scripts through ``service``, for containers without systemd."""

    def enable(self, name: str) -> None:
        result = run(["update-rc.d", name, "defaults"], check=False)
        if not result.ok:
            logger.warning("Could not register '%s' with update-rc.d: %s", name, result.stderr.strip())

    def start(self, name: str) -> None:
        logger.info("Starting service '%s'", name)
        run(["service", name, "start"])

    def stop(self, name: str) -> None:
        logger.info("Stopping service '%s'", name)
        run(["service", name, "stop"])

    def is_active(self, name: str) -> bool:
        result = run(["service", name, "status"], check=False)
        return result.ok and "online" in result.stdout

    def is_enabled(self, name: str) -> bool:
        # SysV scripts have no separate enabled state once installed
        return True
