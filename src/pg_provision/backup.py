"""Pre-mutation snapshots: verbatim file copies and ownership manifests."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from .filesystem import Filesystem, PathStat

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".ownership"
MANIFEST_HEADER = "# path\towner\tgroup\tmode\tuid\tgid\n"


class BackupError(RuntimeError):
    """Raised when a snapshot cannot be captured; the owning step must not run."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.operation = f"snapshot {path}"
        self.step: Optional[str] = None
        self.completed: list[str] = []
        super().__init__(f"Failed to back up {path}: {reason}")


class RestoreError(RuntimeError):
    """Raised when a snapshot cannot be put back; needs manual intervention."""

    def __init__(self, handle: "BackupHandle", reason: str) -> None:
        self.handle = handle
        super().__init__(f"Failed to restore {handle.source} from {handle.location}: {reason}")


@dataclass(frozen=True, slots=True)
class OwnershipEntry:
    path: str
    owner: str
    group: str
    uid: int
    gid: int
    mode: int
    is_symlink: bool = False

    @classmethod
    def from_stat(cls, st: PathStat) -> "OwnershipEntry":
        return cls(st.path, st.owner, st.group, st.uid, st.gid, st.mode, st.is_symlink)

    def to_line(self) -> str:
        return f"{self.path}\t{self.owner}\t{self.group}\t{self.mode:04o}\t{self.uid}\t{self.gid}\n"

    @classmethod
    def from_line(cls, line: str) -> "OwnershipEntry":
        path, owner, group, mode, uid, gid = line.rstrip("\n").split("\t")
        return cls(path, owner, group, int(uid), int(gid), int(mode, 8))


@dataclass(frozen=True, slots=True)
class BackupHandle:
    """One captured snapshot; ``location`` is the copy or the manifest."""

    kind: str
    source: str
    location: str
    step: str
    created_at: datetime = field(default_factory=datetime.now)
    entries: tuple[OwnershipEntry, ...] = ()


def render_manifest(entries: Iterable[OwnershipEntry]) -> str:
    return MANIFEST_HEADER + "".join(entry.to_line() for entry in entries)


def parse_manifest(text: str) -> tuple[OwnershipEntry, ...]:
    return tuple(
        OwnershipEntry.from_line(line)
        for line in text.splitlines()
        if line.strip() and not line.startswith("#")
    )


class BackupManager:
    """Captures snapshots below ``root``, one directory per run."""

    def __init__(self, fs: Filesystem, root: str) -> None:
        self._fs = fs
        self._root = root
        self._taken: set[str] = set()

    @property
    def root(self) -> str:
        return self._root

    def _unique_location(self, source: str, suffix: str = "") -> str:
        base = os.path.join(self._root, source.lstrip("/")) + suffix
        candidate = base
        counter = 1
        while candidate in self._taken or self._fs.exists(candidate):
            candidate = f"{base}.{counter}"
            counter += 1
        self._taken.add(candidate)
        return candidate

    def snapshot(self, path: str, step: str, kind: str = "auto") -> BackupHandle:
        if not self._fs.exists(path):
            raise BackupError(path, "path does not exist")
        if kind == "auto":
            kind = "ownership" if self._fs.is_dir(path) else "file"
        if kind == "link" and not self._fs.is_symlink(path):
            raise BackupError(path, "not a symbolic link")
        try:
            self._fs.mkdir(self._root)
            if kind in ("file", "link"):
                handle = self._copy_file(path, step)
            elif kind == "ownership":
                handle = self._record_ownership(path, step)
            else:
                raise BackupError(path, f"unknown snapshot kind '{kind}'")
        except OSError as exc:
            raise BackupError(path, exc.strerror or str(exc)) from exc
        logger.info("Captured %s snapshot of %s at %s", handle.kind, path, handle.location)
        return handle

    def snapshot_if_exists(self, path: str, step: str, kind: str = "auto") -> Optional[BackupHandle]:
        """Snapshot ``path`` unless it does not exist yet (nothing to lose).

        ``link`` targets are only captured while ``path`` is a symbolic link;
        a directory in their place is moved aside by its step, not overwritten.
        """
        if not self._fs.exists(path):
            return None
        if kind == "link" and not self._fs.is_symlink(path):
            return None
        return self.snapshot(path, step, kind)

    def _copy_file(self, path: str, step: str) -> BackupHandle:
        location = self._unique_location(path)
        entry = OwnershipEntry.from_stat(self._fs.stat(path))
        self._fs.copy(path, location)
        return BackupHandle(kind="file", source=path, location=location, step=step, entries=(entry,))

    def _record_ownership(self, path: str, step: str) -> BackupHandle:
        errors: list[OSError] = []
        entries = tuple(
            OwnershipEntry.from_stat(self._fs.stat(item))
            for item in self._fs.walk(path, on_error=errors.append)
        )
        if errors:
            first = errors[0]
            raise BackupError(path, f"could not read {len(errors)} entries ({first.strerror or first})")
        location = self._unique_location(path.rstrip("/") or "/root-fs", MANIFEST_SUFFIX)
        self._fs.write_text(location, render_manifest(entries))
        return BackupHandle(kind="ownership", source=path, location=location, step=step, entries=entries)

    def load_entries(self, handle: BackupHandle) -> tuple[OwnershipEntry, ...]:
        if handle.entries:
            return handle.entries
        return parse_manifest(self._fs.read_text(handle.location))

    def restore(self, handle: BackupHandle) -> None:
        """Put one snapshot back; raises RestoreError on any failure."""
        if handle.kind == "file":
            self._restore_file(handle)
        elif handle.kind == "ownership":
            self._restore_ownership(handle)
        else:
            raise RestoreError(handle, f"unknown snapshot kind '{handle.kind}'")
        logger.info("Restored %s snapshot of %s", handle.kind, handle.source)

    def _restore_file(self, handle: BackupHandle) -> None:
        entry = handle.entries[0] if handle.entries else None
        try:
            if entry is not None and entry.is_symlink:
                self._fs.symlink(self._fs.readlink(handle.location), handle.source)
                self._fs.chown(handle.source, entry.uid, entry.gid)
                return
            if self._fs.is_symlink(handle.source):
                raise OSError(f"{handle.source} is now a symbolic link")
            self._fs.copy(handle.location, handle.source)
            if entry is not None:
                self._fs.chown(handle.source, entry.uid, entry.gid)
                self._fs.chmod(handle.source, entry.mode)
        except OSError as exc:
            raise RestoreError(handle, exc.strerror or str(exc)) from exc

    def _restore_ownership(self, handle: BackupHandle) -> None:
        try:
            entries = self.load_entries(handle)
        except (OSError, ValueError) as exc:
            raise RestoreError(handle, f"unreadable manifest: {exc}") from exc
        failures: list[str] = []
        for entry in entries:
            try:
                if not self._fs.exists(entry.path):
                    continue
                self._fs.chown(entry.path, entry.uid, entry.gid)
                if not entry.is_symlink and not self._fs.is_symlink(entry.path):
                    self._fs.chmod(entry.path, entry.mode)
            except OSError as exc:
                failures.append(f"{entry.path}: {exc.strerror or exc}")
        if failures:
            raise RestoreError(handle, f"{len(failures)} entries failed, first: {failures[0]}")

    def restore_all(self, handles: Iterable[BackupHandle]) -> list[RestoreError]:
        """Restore newest first; return the failures instead of stopping at the first."""
        errors: list[RestoreError] = []
        for handle in reversed(list(handles)):
            try:
                self.restore(handle)
            except RestoreError as exc:
                logger.error("%s; manual intervention required", exc)
                errors.append(exc)
        return errors
