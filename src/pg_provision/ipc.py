"""System V shared memory segments left behind by a service account."""
from __future__ import annotations

import logging
from typing import Protocol

from .shell import run

logger = logging.getLogger(__name__)

SYSVIPC_SHM = "/proc/sysvipc/shm"


class SharedMemory(Protocol):
    def segments_owned_by(self, uid: int) -> list[int]: ...

    def remove(self, shmid: int) -> None: ...


def parse_sysvipc_shm(text: str, uid: int) -> list[int]:
    """Return shmids from ``/proc/sysvipc/shm`` content owned by ``uid``."""
    lines = [line.split() for line in text.splitlines() if line.strip()]
    if not lines:
        return []
    header = lines[0]
    try:
        shmid_col = header.index("shmid")
        uid_col = header.index("uid")
    except ValueError:
        logger.warning("Unrecognized %s header: %s", SYSVIPC_SHM, " ".join(header))
        return []
    segments: list[int] = []
    for columns in lines[1:]:
        if len(columns) <= max(shmid_col, uid_col):
            continue
        if columns[uid_col] == str(uid):
            segments.append(int(columns[shmid_col]))
    return segments


class SysvSharedMemory:
    def __init__(self, source: str = SYSVIPC_SHM) -> None:
        self._source = source

    def segments_owned_by(self, uid: int) -> list[int]:
        with open(self._source, encoding="utf-8") as handle:
            return parse_sysvipc_shm(handle.read(), uid)

    def remove(self, shmid: int) -> None:
        run(["ipcrm", "-m", str(shmid)])
