from __future__ import annotations

import errno
import posixpath
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, Optional, Union

import pytest

from pg_provision.accounts import GroupIdentity, Identity
from pg_provision.apt import PackageError, RepositorySpec
from pg_provision.config import ProvisionConfig
from pg_provision.filesystem import PathStat, WalkErrorHandler
from pg_provision.host import Host
from pg_provision.postgres import Endpoint, ProbeError
from pg_provision.reporter import Reporter
from pg_provision.state import RunStore


class FakeDirectory:
    """In-memory passwd/group databases."""

    def __init__(self, *, euid: int = 0, current: str = "root") -> None:
        self.users: dict[str, list[int]] = {"root": [0, 0]}
        self.groups: dict[str, int] = {"root": 0}
        self.euid = euid
        self.current = current
        self.calls: list[tuple[str, str, int]] = []
        self.fail_set_uid: Optional[str] = None

    def add_user(self, name: str, uid: int, gid: int) -> None:
        self.users[name] = [uid, gid]
        self.groups.setdefault(name, gid)

    def lookup_user(self, key: Union[str, int]) -> Optional[Identity]:
        for name, (uid, gid) in self.users.items():
            if key == name or key == uid:
                return Identity(name=name, uid=uid, gid=gid)
        return None

    def lookup_group(self, key: Union[str, int]) -> Optional[GroupIdentity]:
        for name, gid in self.groups.items():
            if key == name or key == gid:
                return GroupIdentity(name=name, gid=gid)
        return None

    def set_uid(self, name: str, uid: int) -> None:
        self.calls.append(("usermod", name, uid))
        if self.fail_set_uid:
            raise RuntimeError(self.fail_set_uid)
        self.users[name][0] = uid

    def set_gid(self, name: str, gid: int) -> None:
        self.calls.append(("groupmod", name, gid))
        old = self.groups[name]
        self.groups[name] = gid
        for ids in self.users.values():
            if ids[1] == old:
                ids[1] = gid

    def effective_uid(self) -> int:
        return self.euid

    def current_user(self) -> str:
        return self.current

    def user_name(self, uid: int) -> str:
        identity = self.lookup_user(uid)
        return identity.name if identity else str(uid)

    def group_name(self, gid: int) -> str:
        group = self.lookup_group(gid)
        return group.name if group else str(gid)


@dataclass
class Node:
    kind: str
    uid: int = 0
    gid: int = 0
    mode: int = 0o755
    content: str = ""
    target: str = ""


class FakeFilesystem:
    """Path-keyed tree; names resolve through the fake directory."""

    def __init__(self, directory: FakeDirectory) -> None:
        self.directory = directory
        self.nodes: dict[str, Node] = {"/": Node("dir")}
        self.mutations: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], OSError] = {}
        self.denied: set[str] = set()

    # setup helpers

    def add_dir(self, path: str, uid: int = 0, gid: int = 0, mode: int = 0o755) -> None:
        self._ensure_parents(path)
        self.nodes[path] = Node("dir", uid, gid, mode)

    def add_file(self, path: str, content: str = "", uid: int = 0, gid: int = 0, mode: int = 0o644) -> None:
        self._ensure_parents(path)
        self.nodes[path] = Node("file", uid, gid, mode, content=content)

    def add_link(self, link: str, target: str) -> None:
        self._ensure_parents(link)
        self.nodes[link] = Node("link", mode=0o777, target=target)

    def fail(self, operation: str, path: str, error: Optional[OSError] = None) -> None:
        self.failures[(operation, path)] = error or PermissionError(errno.EACCES, "Permission denied", path)

    def mutated(self, below: str = "/") -> list[tuple[str, str]]:
        prefix = below.rstrip("/") + "/"
        return [item for item in self.mutations if item[1] == below or item[1].startswith(prefix)]

    # Filesystem protocol

    def exists(self, path: str) -> bool:
        return self._norm(path) in self.nodes

    def is_dir(self, path: str) -> bool:
        node = self.nodes.get(self._norm(path))
        return node is not None and node.kind == "dir"

    def is_symlink(self, path: str) -> bool:
        node = self.nodes.get(self._norm(path))
        return node is not None and node.kind == "link"

    def readlink(self, path: str) -> str:
        node = self._node(path)
        if node.kind != "link":
            raise OSError(errno.EINVAL, "Invalid argument", path)
        return node.target

    def mkdir(self, path: str, *, parents: bool = True) -> bool:
        path = self._norm(path)
        if self.is_dir(path):
            return False
        self._check("mkdir", path)
        if path in self.nodes:
            raise FileExistsError(errno.EEXIST, "File exists", path)
        self._ensure_parents(path)
        self.nodes[path] = Node("dir")
        self.mutations.append(("mkdir", path))
        return True

    def chown(self, path: str, owner, group, *, recursive: bool = False) -> None:
        path = self._norm(path)
        self._check("chown", path)
        node = self._node(path)
        uid = owner if isinstance(owner, int) else self.directory.users[owner][0]
        gid = group if isinstance(group, int) else self.directory.groups[group]
        targets = [path]
        if recursive and node.kind == "dir":
            targets.extend(self._descendants(path))
        for target in targets:
            self.nodes[target].uid = uid
            self.nodes[target].gid = gid
        self.mutations.append(("chown", path))

    def chmod(self, path: str, mode: int) -> None:
        path = self._norm(path)
        self._check("chmod", path)
        self._node(path).mode = mode
        self.mutations.append(("chmod", path))

    def symlink(self, target: str, link: str) -> bool:
        link = self._norm(link)
        self._check("symlink", link)
        node = self.nodes.get(link)
        if node is not None:
            if node.kind != "link":
                raise OSError(errno.EEXIST, "File exists", link)
            if node.target == target:
                return False
        if posixpath.dirname(link) not in self.nodes:
            raise FileNotFoundError(errno.ENOENT, "No such file or directory", link)
        self.nodes[link] = Node("link", mode=0o777, target=target)
        self.mutations.append(("symlink", link))
        return True

    def copy(self, source: str, destination: str) -> None:
        source, destination = self._norm(source), self._norm(destination)
        self._check("copy", source)
        self._check("copy", destination)
        node = self._node(source)
        self._ensure_parents(destination)
        self.nodes[destination] = replace(node, uid=0, gid=0)
        self.mutations.append(("copy", destination))

    def rename(self, source: str, destination: str) -> None:
        source, destination = self._norm(source), self._norm(destination)
        self._check("rename", source)
        if destination in self.nodes:
            raise OSError(errno.EEXIST, "File exists", destination)
        self._node(source)
        for path in [source, *self._descendants(source)]:
            self.nodes[destination + path[len(source):]] = self.nodes.pop(path)
        self.mutations.append(("rename", source))

    def unlink(self, path: str) -> None:
        path = self._norm(path)
        self._check("unlink", path)
        if self._node(path).kind == "dir":
            raise IsADirectoryError(errno.EISDIR, "Is a directory", path)
        del self.nodes[path]
        self.mutations.append(("unlink", path))

    def stat(self, path: str) -> PathStat:
        path = self._norm(path)
        self._check("stat", path)
        node = self._node(path)
        return PathStat(
            path=path,
            owner=self.directory.user_name(node.uid),
            group=self.directory.group_name(node.gid),
            uid=node.uid,
            gid=node.gid,
            mode=node.mode,
            is_dir=node.kind == "dir",
            is_symlink=node.kind == "link",
        )

    def walk(
        self,
        root: str,
        *,
        exclude: Iterable[str] = (),
        on_error: Optional[WalkErrorHandler] = None,
    ) -> Iterator[str]:
        root = self._norm(root)
        excluded = tuple(exclude)
        if self._excluded(root, excluded) or root not in self.nodes:
            return
        yield root
        if self.nodes[root].kind == "dir":
            yield from self._walk(root, excluded, on_error)

    def read_text(self, path: str) -> str:
        node = self._node(path)
        if node.kind != "file":
            raise IsADirectoryError(errno.EISDIR, "Is a directory", path)
        return node.content

    def write_text(self, path: str, text: str) -> None:
        path = self._norm(path)
        self._check("write", path)
        self._ensure_parents(path)
        self.nodes[path] = Node("file", content=text, mode=0o644)
        self.mutations.append(("write", path))

    # internals

    @staticmethod
    def _norm(path: str) -> str:
        return posixpath.normpath(str(path))

    @staticmethod
    def _excluded(path: str, exclude: tuple[str, ...]) -> bool:
        return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in exclude)

    def _node(self, path: str) -> Node:
        try:
            return self.nodes[self._norm(path)]
        except KeyError:
            raise FileNotFoundError(errno.ENOENT, "No such file or directory", path) from None

    def _check(self, operation: str, path: str) -> None:
        error = self.failures.get((operation, path))
        if error is not None:
            raise error

    def _ensure_parents(self, path: str) -> None:
        parent = posixpath.dirname(self._norm(path))
        missing = []
        while parent not in self.nodes:
            missing.append(parent)
            parent = posixpath.dirname(parent)
        for item in reversed(missing):
            self.nodes[item] = Node("dir")

    def _children(self, path: str) -> list[str]:
        return sorted(item for item in self.nodes if item != "/" and posixpath.dirname(item) == path)

    def _descendants(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return sorted(item for item in self.nodes if item.startswith(prefix))

    def _walk(self, path: str, excluded: tuple[str, ...], on_error: Optional[WalkErrorHandler]) -> Iterator[str]:
        if path in self.denied:
            if on_error is not None:
                on_error(PermissionError(errno.EACCES, "Permission denied", path))
            return
        for child in self._children(path):
            if self._excluded(child, excluded):
                continue
            yield child
            if self.nodes[child].kind == "dir":
                yield from self._walk(child, excluded, on_error)


class FakeServices:
    def __init__(self, *, active: Iterable[str] = (), enabled: Iterable[str] = ()) -> None:
        self.active = set(active)
        self.enabled = set(enabled)
        self.calls: list[tuple[str, str]] = []
        self.fail_start = False

    def enable(self, name: str) -> None:
        self.calls.append(("enable", name))
        self.enabled.add(name)

    def start(self, name: str) -> None:
        self.calls.append(("start", name))
        if self.fail_start:
            raise RuntimeError(f"Job for {name}.service failed")
        self.active.add(name)

    def stop(self, name: str) -> None:
        self.calls.append(("stop", name))
        self.active.discard(name)

    def is_active(self, name: str) -> bool:
        return name in self.active

    def is_enabled(self, name: str) -> bool:
        return name in self.enabled


class FakePackages:
    def __init__(self) -> None:
        self.repositories: list[str] = []
        self.installed: list[str] = []
        self.fail_install = False

    def add_repository(self, spec: RepositorySpec) -> bool:
        if spec.name in self.repositories:
            return False
        self.repositories.append(spec.name)
        return True

    def install(self, packages) -> None:
        if self.fail_install:
            raise PackageError("apt-get install -y " + " ".join(packages), "Unable to locate package")
        self.installed.extend(package for package in packages if package not in self.installed)


class FakeProbe:
    def __init__(self) -> None:
        self.endpoints: list[Endpoint] = []
        self.fail = False

    def try_connect(self, endpoint: Endpoint) -> None:
        self.endpoints.append(endpoint)
        if self.fail:
            raise ProbeError(endpoint, "could not connect to server")


class FakeShm:
    def __init__(self, segments: Optional[dict[int, int]] = None) -> None:
        self.segments = dict(segments or {})
        self.removed: list[int] = []

    def segments_owned_by(self, uid: int) -> list[int]:
        return sorted(shmid for shmid, owner in self.segments.items() if owner == uid)

    def remove(self, shmid: int) -> None:
        del self.segments[shmid]
        self.removed.append(shmid)


@pytest.fixture
def directory() -> FakeDirectory:
    fake = FakeDirectory()
    fake.add_user("postgres", 152, 152)
    return fake


@pytest.fixture
def fs(directory: FakeDirectory) -> FakeFilesystem:
    fake = FakeFilesystem(directory)
    fake.add_file("/etc/passwd", "root:x:0:0::/root:/bin/bash\npostgres:x:152:152::/var/lib/postgresql:/bin/bash\n")
    fake.add_file("/etc/group", "root:x:0:\npostgres:x:152:\n")
    return fake


@pytest.fixture
def host(fs: FakeFilesystem, directory: FakeDirectory) -> Host:
    return Host(
        packages=FakePackages(),
        fs=fs,
        directory=directory,
        services=FakeServices(),
        probe=FakeProbe(),
        shm=FakeShm(),
    )


@pytest.fixture
def store(tmp_path) -> RunStore:
    return RunStore(tmp_path / "runs")


@pytest.fixture
def reporter() -> Iterator[Reporter]:
    with Reporter("test-run", echo=False) as instance:
        yield instance


@pytest.fixture
def config(tmp_path) -> ProvisionConfig:
    return ProvisionConfig.from_dict(
        {"runs": {"root": str(tmp_path / "runs"), "lock_file": str(tmp_path / "pg-provision.lock")}}
    )
