"""UID/GID migration of the PostgreSQL service account.

The group id changes before the user id so that ``usermod`` can resolve the
primary group, ownership is restamped on the PostgreSQL trees, then a best
effort sweep re-owns whatever the old ids still hold elsewhere on the host.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import ProvisionConfig
from .host import Host
from .models import BackupTarget, RunContext
from .preflight import Requirements
from .registry import StepRegistry
from .service import ProvisioningPlan
from .verification import AccountExpectation, DirectoryExpectation, Expectations, OrphanExpectation
from .workflow import MutationError, attempt

logger = logging.getLogger(__name__)

PLAN_NAME = "migrate-ids"


@dataclass(frozen=True, slots=True)
class IdChange:
    username: str
    old_uid: Optional[int]
    old_gid: Optional[int]
    new_uid: int
    new_gid: int

    def require_old(self) -> tuple[int, int]:
        if self.old_uid is None or self.old_gid is None:
            raise MutationError("resolve current ids", f"current uid/gid of '{self.username}' are unknown")
        return self.old_uid, self.old_gid

    def stale_ids(self) -> tuple[Optional[int], Optional[int]]:
        """Old ids that differ from the new ones; ``None`` where the id does not move."""
        old_uid, old_gid = self.require_old()
        return (
            old_uid if old_uid != self.new_uid else None,
            old_gid if old_gid != self.new_gid else None,
        )


def resolve_change(config: ProvisionConfig, host: Host) -> IdChange:
    """Fill in the old ids from the directory service when not configured."""
    migration = config.migration
    old_uid, old_gid = migration.old_uid, migration.old_gid
    if old_uid is None or old_gid is None:
        identity = host.directory.lookup_user(migration.username)
        group = host.directory.lookup_group(migration.username)
        if old_uid is None and identity is not None:
            old_uid = identity.uid
        if old_gid is None:
            if group is not None:
                old_gid = group.gid
            elif identity is not None:
                old_gid = identity.gid
    return IdChange(
        username=migration.username,
        old_uid=old_uid,
        old_gid=old_gid,
        new_uid=migration.new_uid,
        new_gid=migration.new_gid,
    )


class MigrationSteps:
    def __init__(self, config: ProvisionConfig, host: Host, change: IdChange) -> None:
        self._migration = config.migration
        self._host = host
        self._fs = host.fs
        self._directory = host.directory
        self.change = change

    def change_group_id(self, context: RunContext) -> str:
        name = self.change.username
        group = self._directory.lookup_group(name)
        if group is None:
            raise MutationError(f"groupmod -g {self.change.new_gid} {name}", f"group '{name}' does not exist")
        if group.gid == self.change.new_gid:
            return f"group '{name}' already has gid {group.gid}"
        with attempt(f"groupmod -g {self.change.new_gid} {name}"):
            self._directory.set_gid(name, self.change.new_gid)
        return f"group '{name}' gid {group.gid} -> {self.change.new_gid}"

    def revert_group_id(self, context: RunContext) -> None:
        _, old_gid = self.change.require_old()
        group = self._directory.lookup_group(self.change.username)
        if group is None or group.gid == old_gid:
            return
        with attempt(f"groupmod -g {old_gid} {self.change.username}"):
            self._directory.set_gid(self.change.username, old_gid)

    def change_user_id(self, context: RunContext) -> str:
        name = self.change.username
        identity = self._directory.lookup_user(name)
        if identity is None:
            raise MutationError(f"usermod -u {self.change.new_uid} {name}", f"user '{name}' does not exist")
        if identity.uid == self.change.new_uid:
            return f"user '{name}' already has uid {identity.uid}"
        with attempt(f"usermod -u {self.change.new_uid} {name}"):
            self._directory.set_uid(name, self.change.new_uid)
        return f"user '{name}' uid {identity.uid} -> {self.change.new_uid}"

    def revert_user_id(self, context: RunContext) -> None:
        old_uid, _ = self.change.require_old()
        identity = self._directory.lookup_user(self.change.username)
        if identity is None or identity.uid == old_uid:
            return
        with attempt(f"usermod -u {old_uid} {self.change.username}"):
            self._directory.set_uid(self.change.username, old_uid)

    def confirm_ids(self, context: RunContext) -> str:
        name = self.change.username
        identity = self._directory.lookup_user(name)
        if identity is None:
            raise MutationError(f"id {name}", f"user '{name}' no longer resolves")
        expected = (self.change.new_uid, self.change.new_gid)
        if (identity.uid, identity.gid) != expected:
            raise MutationError(
                f"id {name}",
                f"uid/gid is {identity.uid}/{identity.gid}, expected {expected[0]}/{expected[1]}",
            )
        return f"'{name}' resolves to uid={identity.uid} gid={identity.gid}"

    def existing_roots(self) -> list[str]:
        return [root for root in self._migration.roots if self._fs.exists(root)]

    def restamp_ownership(self, context: RunContext) -> str:
        name = self.change.username
        restamped: list[str] = []
        missing: list[str] = []
        for root in self._migration.roots:
            if not self._fs.exists(root):
                logger.warning("Ownership root %s does not exist; skipping", root)
                missing.append(root)
                continue
            with attempt(f"chown -R {name}:{name} {root}"):
                self._fs.chown(root, self.change.new_uid, self.change.new_gid, recursive=True)
            restamped.append(root)
        context.notes["restamped_roots"] = restamped
        if missing:
            context.notes["missing_roots"] = missing
            return f"restamped {len(restamped)} roots; missing: {', '.join(missing)}"
        return f"restamped {len(restamped)} roots"

    def sweep_old_ownership(self, context: RunContext) -> str:
        old_uid, old_gid = self.change.stale_ids()
        if old_uid is None and old_gid is None:
            context.notes["sweep"] = {"changed": 0, "skipped": 0}
            return "uid/gid unchanged; nothing to sweep"
        exclude = tuple(self._migration.sweep_exclude)
        if context.backup_root:
            exclude += (context.backup_root,)
        changed = 0
        denied = 0

        def count_error(exc: OSError) -> None:
            nonlocal denied
            denied += 1
            logger.debug("Sweep could not read %s: %s", exc.filename, exc.strerror)

        for root in self._migration.sweep_roots:
            for path in self._fs.walk(root, exclude=exclude, on_error=count_error):
                try:
                    st = self._fs.stat(path)
                    uid_stale = old_uid is not None and st.uid == old_uid
                    gid_stale = old_gid is not None and st.gid == old_gid
                    if not uid_stale and not gid_stale:
                        continue
                    uid = self.change.new_uid if uid_stale else st.uid
                    gid = self.change.new_gid if gid_stale else st.gid
                    self._fs.chown(path, uid, gid)
                except OSError as exc:
                    count_error(exc)
                    continue
                changed += 1

        context.notes["sweep"] = {"changed": changed, "skipped": denied}
        if denied:
            logger.warning("Ownership sweep skipped %d unreadable entries", denied)
        return f"re-owned {changed} paths still owned by the old ids; {denied} entries skipped"

    def release_shared_memory(self, context: RunContext) -> str:
        old_uid, _ = self.change.stale_ids()
        if old_uid is None:
            return f"uid {self.change.new_uid} unchanged; no shared memory to release"
        with attempt(f"ipcs -m (uid {old_uid})"):
            segments = self._host.shm.segments_owned_by(old_uid)
        removed: list[int] = []
        failed: list[int] = []
        for shmid in segments:
            try:
                self._host.shm.remove(shmid)
            except Exception as exc:  # noqa: BLE001 - best effort per segment
                logger.warning("Could not remove shared memory segment %s: %s", shmid, exc)
                failed.append(shmid)
            else:
                removed.append(shmid)
        context.notes["shared_memory"] = {"removed": removed, "failed": failed}
        if not segments:
            return f"no shared memory segments owned by uid {old_uid}"
        suffix = f"; {len(failed)} could not be removed" if failed else ""
        return f"removed {len(removed)} shared memory segments{suffix}"


def build_migration_plan(config: ProvisionConfig, host: Host) -> ProvisioningPlan:
    """Assemble the ordered id migration steps for ``config.migration``."""
    migration = config.migration
    change = resolve_change(config, host)
    steps = MigrationSteps(config, host, change)
    registry = StepRegistry(PLAN_NAME)

    registry.add(
        "change_group_id",
        steps.change_group_id,
        ordinal=10,
        rollback=steps.revert_group_id,
        backups=(BackupTarget(migration.group_file, "file"),),
        description=f"groupmod -g {change.new_gid} {change.username}",
    )
    registry.add(
        "change_user_id",
        steps.change_user_id,
        ordinal=20,
        rollback=steps.revert_user_id,
        backups=(BackupTarget(migration.passwd_file, "file"),),
        depends_on=("change_group_id",),
        description=f"usermod -u {change.new_uid} {change.username}",
    )
    registry.add(
        "confirm_ids",
        steps.confirm_ids,
        ordinal=30,
        depends_on=("change_user_id",),
        description="Read back the account ids",
    )
    registry.add(
        "restamp_ownership",
        steps.restamp_ownership,
        ordinal=40,
        backups=tuple(BackupTarget(root, "ownership") for root in migration.roots),
        depends_on=("confirm_ids",),
        description="chown -R the PostgreSQL directories",
    )
    registry.add(
        "sweep_old_ownership",
        steps.sweep_old_ownership,
        ordinal=50,
        mandatory=False,
        depends_on=("confirm_ids",),
        description=f"Re-own remaining paths under {', '.join(migration.sweep_roots)}",
    )
    registry.add(
        "release_shared_memory",
        steps.release_shared_memory,
        ordinal=60,
        mandatory=False,
        description="Remove SysV shared memory segments held by the old uid",
    )

    requirements = Requirements(
        require_root=True,
        forbidden_user=change.username,
        account=change.username,
        inactive_services=(config.service.name,),
        free_uids=(change.new_uid,),
        free_gids=(change.new_gid,),
    )
    directories = tuple(
        DirectoryExpectation(path=root, owner=change.username, group=change.username)
        for root in steps.existing_roots()
    )
    orphans = None
    if change.old_uid is not None and change.old_gid is not None:
        stale_uid, stale_gid = change.stale_ids()
        if stale_uid is not None or stale_gid is not None:
            orphans = OrphanExpectation(
                roots=tuple(migration.sweep_roots),
                uid=stale_uid,
                gid=stale_gid,
                exclude=tuple(migration.sweep_exclude),
            )
    expectations = Expectations(
        directories=directories,
        account=AccountExpectation(change.username, change.new_uid, change.new_gid),
        orphans=orphans,
    )
    params = {
        "username": change.username,
        "old_uid": change.old_uid,
        "old_gid": change.old_gid,
        "new_uid": change.new_uid,
        "new_gid": change.new_gid,
        "roots": list(migration.roots),
        "sweep_roots": list(migration.sweep_roots),
    }
    confirmation = (
        f"Change '{change.username}' from uid/gid {change.old_uid}/{change.old_gid} "
        f"to {change.new_uid}/{change.new_gid} and re-own its files?"
    )
    return ProvisioningPlan(
        name=PLAN_NAME,
        registry=registry,
        requirements=requirements,
        expectations=expectations,
        params=params,
        confirmation=confirmation,
    )
