"""Filesystem collaborator used by provisioning steps and backups."""
from __future__ import annotations

import errno
import grp
import logging
import os
import pwd
import shutil
import stat
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Protocol, Union

logger = logging.getLogger(__name__)

Principal = Union[str, int]
WalkErrorHandler = Callable[[OSError], None]


@dataclass(frozen=True, slots=True)
class PathStat:
    path: str
    owner: str
    group: str
    uid: int
    gid: int
    mode: int
    is_dir: bool
    is_symlink: bool


class Filesystem(Protocol):
    def exists(self, path: str) -> bool: ...

    def is_dir(self, path: str) -> bool: ...

    def is_symlink(self, path: str) -> bool: ...

    def readlink(self, path: str) -> str: ...

    def mkdir(self, path: str, *, parents: bool = True) -> bool: ...

    def chown(self, path: str, owner: Principal, group: Principal, *, recursive: bool = False) -> None: ...

    def chmod(self, path: str, mode: int) -> None: ...

    def symlink(self, target: str, link: str) -> bool: ...

    def copy(self, source: str, destination: str) -> None: ...

    def rename(self, source: str, destination: str) -> None: ...

    def unlink(self, path: str) -> None: ...

    def stat(self, path: str) -> PathStat: ...

    def walk(
        self,
        root: str,
        *,
        exclude: Iterable[str] = (),
        on_error: Optional[WalkErrorHandler] = None,
    ) -> Iterator[str]: ...

    def read_text(self, path: str) -> str: ...

    def write_text(self, path: str, text: str) -> None: ...


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _resolve_uid(owner: Principal) -> int:
    if isinstance(owner, int):
        return owner
    try:
        return pwd.getpwnam(owner).pw_uid
    except KeyError as exc:
        raise OSError(errno.EINVAL, f"Unknown user '{owner}'") from exc


def _resolve_gid(group: Principal) -> int:
    if isinstance(group, int):
        return group
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError as exc:
        raise OSError(errno.EINVAL, f"Unknown group '{group}'") from exc


def _is_excluded(path: str, exclude: tuple[str, ...]) -> bool:
    return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in exclude)


class LocalFilesystem:
    """Filesystem operations against the running host."""

    def exists(self, path: str) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path) and not os.path.islink(path)

    def is_symlink(self, path: str) -> bool:
        return os.path.islink(path)

    def readlink(self, path: str) -> str:
        return os.readlink(path)

    def mkdir(self, path: str, *, parents: bool = True) -> bool:
        """Create ``path``; return ``False`` when it already existed."""
        if os.path.isdir(path):
            return False
        if parents:
            os.makedirs(path)
        else:
            os.mkdir(path)
        return True

    def chown(self, path: str, owner: Principal, group: Principal, *, recursive: bool = False) -> None:
        uid = _resolve_uid(owner)
        gid = _resolve_gid(group)
        os.chown(path, uid, gid, follow_symlinks=False)
        if not recursive or not self.is_dir(path):
            return
        unreadable: list[OSError] = []
        for dirpath, dirnames, filenames in os.walk(path, onerror=unreadable.append):
            for name in dirnames + filenames:
                os.chown(os.path.join(dirpath, name), uid, gid, follow_symlinks=False)
        if unreadable:
            first = unreadable[0]
            raise OSError(
                first.errno or errno.EACCES,
                f"{len(unreadable)} entries below {path} could not be read ({first.strerror or first})",
                first.filename,
            )

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(path, mode)

    def symlink(self, target: str, link: str) -> bool:
        """Point ``link`` at ``target``; return ``False`` when it already did."""
        if os.path.islink(link):
            if os.readlink(link) == target:
                return False
            os.unlink(link)
        elif os.path.lexists(link):
            raise OSError(errno.EEXIST, f"{link} exists and is not a symbolic link")
        os.symlink(target, link)
        return True

    def copy(self, source: str, destination: str) -> None:
        parent = os.path.dirname(destination)
        if parent:
            os.makedirs(parent, exist_ok=True)
        shutil.copy2(source, destination, follow_symlinks=False)

    def rename(self, source: str, destination: str) -> None:
        if os.path.lexists(destination):
            raise OSError(errno.EEXIST, f"{destination} already exists")
        os.rename(source, destination)

    def unlink(self, path: str) -> None:
        if self.is_dir(path):
            raise IsADirectoryError(errno.EISDIR, "Is a directory", path)
        os.unlink(path)

    def stat(self, path: str) -> PathStat:
        st = os.lstat(path)
        return PathStat(
            path=path,
            owner=_user_name(st.st_uid),
            group=_group_name(st.st_gid),
            uid=st.st_uid,
            gid=st.st_gid,
            mode=stat.S_IMODE(st.st_mode),
            is_dir=stat.S_ISDIR(st.st_mode),
            is_symlink=stat.S_ISLNK(st.st_mode),
        )

    def walk(
        self,
        root: str,
        *,
        exclude: Iterable[str] = (),
        on_error: Optional[WalkErrorHandler] = None,
    ) -> Iterator[str]:
        """Yield ``root`` and every path below it without following symlinks."""
        excluded = tuple(exclude)
        if _is_excluded(root, excluded) or not os.path.lexists(root):
            return
        yield root
        if not self.is_dir(root):
            return
        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            dirnames[:] = [name for name in dirnames if not _is_excluded(os.path.join(dirpath, name), excluded)]
            for name in dirnames + filenames:
                yield os.path.join(dirpath, name)

    def read_text(self, path: str) -> str:
        with open(path, encoding="utf-8") as handle:
            return handle.read()

    def write_text(self, path: str, text: str) -> None:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
