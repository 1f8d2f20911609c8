"""User and group directory collaborator."""
from __future__ import annotations

import grp
import logging
import os
import pwd
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from .shell import run

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    name: str
    uid: int
    gid: int


@dataclass(frozen=True, slots=True)
class GroupIdentity:
    name: str
    gid: int


class DirectoryService(Protocol):
    def lookup_user(self, key: Union[str, int]) -> Optional[Identity]: ...

    def lookup_group(self, key: Union[str, int]) -> Optional[GroupIdentity]: ...

    def set_uid(self, name: str, uid: int) -> None: ...

    def set_gid(self, name: str, gid: int) -> None: ...

    def effective_uid(self) -> int: ...

    def current_user(self) -> str: ...


class PosixDirectoryService:
    """Reads the passwd/group databases and edits them with usermod/groupmod."""

    def lookup_user(self, key: Union[str, int]) -> Optional[Identity]:
        try:
            entry = pwd.getpwuid(key) if isinstance(key, int) else pwd.getpwnam(key)
        except KeyError:
            return None
        return Identity(name=entry.pw_name, uid=entry.pw_uid, gid=entry.pw_gid)

    def lookup_group(self, key: Union[str, int]) -> Optional[GroupIdentity]:
        try:
            entry = grp.getgrgid(key) if isinstance(key, int) else grp.getgrnam(key)
        except KeyError:
            return None
        return GroupIdentity(name=entry.gr_name, gid=entry.gr_gid)

    def set_uid(self, name: str, uid: int) -> None:
        logger.info("Changing uid of '%s' to %d", name, uid)
        run(["usermod", "-u", str(uid), name])

    def set_gid(self, name: str, gid: int) -> None:
        logger.info("Changing gid of group '%s' to %d", name, gid)
        run(["groupmod", "-g", str(gid), name])

    def effective_uid(self) -> int:
        return os.geteuid()

    def current_user(self) -> str:
        identity = self.lookup_user(os.geteuid())
        return identity.name if identity else str(os.geteuid())
