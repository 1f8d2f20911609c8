"""PostgreSQL installation step sequence."""
from __future__ import annotations

import logging
import os

from .apt import RepositorySpec
from .config import DirectoryConfig, ProvisionConfig
from .host import Host, endpoint_from_config
from .models import BackupTarget, RunContext
from .preflight import Requirements
from .registry import StepRegistry
from .service import ProvisioningPlan
from .verification import DirectoryExpectation, Expectations
from .workflow import MutationError, attempt, restore_backups

logger = logging.getLogger(__name__)

PLAN_NAME = "install"


class InstallSteps:
    """Step actions for one PostgreSQL version, bound to a host."""

    def __init__(self, config: ProvisionConfig, host: Host) -> None:
        self._config = config
        self._install = config.install
        self._host = host
        self._fs = host.fs
        data_dir, log_dir, lock_dir = self._install.directories()
        self.data_dir = data_dir
        self.log_dir = log_dir
        self.lock_dir = lock_dir
        self.cluster_link = self._install.render(self._install.cluster_link)

    def repository_spec(self) -> RepositorySpec:
        repo = self._install.repository
        return RepositorySpec(
            name=repo.name,
            url=repo.url,
            key_url=repo.key_url,
            keyring=repo.keyring,
            list_file=repo.list_file,
            component=repo.component,
        )

    def add_repository(self, context: RunContext) -> str:
        spec = self.repository_spec()
        with attempt(f"add repository {spec.name}"):
            changed = self._host.packages.add_repository(spec)
        return f"repository {spec.name} configured" if changed else f"repository {spec.name} already configured"

    def install_packages(self, context: RunContext) -> str:
        packages = self._install.rendered_packages()
        with attempt("install " + " ".join(packages)):
            self._host.packages.install(packages)
        return f"installed {', '.join(packages)}"

    def _ensure_directory(self, directory: DirectoryConfig, *, recursive: bool = False) -> str:
        path = directory.path
        with attempt(f"mkdir -p {path}"):
            created = self._fs.mkdir(path)
        flag = "-R " if recursive else ""
        with attempt(f"chown {flag}{directory.owner}:{directory.group} {path}"):
            self._fs.chown(path, directory.owner, directory.group, recursive=recursive)
        with attempt(f"chmod {directory.mode:o} {path}"):
            self._fs.chmod(path, directory.mode)
        state = "created" if created else "already present"
        return f"{path} {state} ({directory.owner}:{directory.group} {directory.mode:04o})"

    def create_data_directory(self, context: RunContext) -> str:
        return self._ensure_directory(self.data_dir, recursive=True)

    def create_log_directory(self, context: RunContext) -> str:
        return self._ensure_directory(self.log_dir)

    def create_lock_directory(self, context: RunContext) -> str:
        return self._ensure_directory(self.lock_dir)

    def link_data_directory(self, context: RunContext) -> str:
        link = self.cluster_link
        target = self.data_dir.path
        if self._fs.is_symlink(link):
            if self._fs.readlink(link) == target:
                return f"{link} already points to {target}"
        elif self._fs.is_dir(link):
            moved = link + self._install.original_suffix
            with attempt(f"mv {link} {moved}"):
                self._fs.rename(link, moved)
            context.notes["original_data_dir"] = moved
            logger.info("Moved existing cluster directory %s to %s", link, moved)
        elif self._fs.exists(link):
            raise MutationError(f"ln -s {target} {link}", f"{link} exists and is not a directory")

        parent = os.path.dirname(link)
        with attempt(f"mkdir -p {parent}"):
            self._fs.mkdir(parent)
        with attempt(f"ln -sfn {target} {link}"):
            if self._fs.symlink(target, link):
                context.notes["data_dir_linked"] = link
        return f"{link} -> {target}"

    def unlink_data_directory(self, context: RunContext) -> None:
        """Undo ``link_data_directory``: drop the new link and move the original back."""
        link = self.cluster_link
        if context.notes.get("data_dir_linked") == link and self._fs.is_symlink(link):
            with attempt(f"rm {link}"):
                self._fs.unlink(link)
        if context.backups_for("link_data_directory"):
            restore_backups(self._fs, "link_data_directory")(context)
        moved = context.notes.get("original_data_dir")
        if moved and self._fs.exists(moved) and not self._fs.exists(link):
            with attempt(f"mv {moved} {link}"):
                self._fs.rename(moved, link)
            logger.info("Moved %s back to %s", moved, link)

    def copy_management_files(self, context: RunContext) -> str:
        management = self._install.management
        owner, group = self.data_dir.owner, self.data_dir.group
        if not self._fs.is_dir(management.source_dir):
            raise MutationError(
                f"cp {management.source_dir}/*", f"source directory {management.source_dir} not found"
            )

        with attempt(f"mkdir -p {management.bin_dir}"):
            self._fs.mkdir(management.bin_dir)
            self._fs.chown(management.bin_dir, owner, group)
        with attempt(f"mkdir -p {management.link_dir}"):
            self._fs.mkdir(management.link_dir)

        copied: list[str] = []
        missing: list[str] = []
        for name in management.files:
            source = os.path.join(management.source_dir, name)
            if not self._fs.exists(source):
                missing.append(name)
                continue
            destination = os.path.join(management.bin_dir, name)
            with attempt(f"cp {source} {destination}"):
                self._fs.copy(source, destination)
            with attempt(f"chown {owner}:{group} {destination}"):
                self._fs.chown(destination, owner, group)
            with attempt(f"chmod {management.mode:o} {destination}"):
                self._fs.chmod(destination, management.mode)
            command = os.path.join(management.link_dir, name.removesuffix(".sh"))
            with attempt(f"ln -sf {destination} {command}"):
                self._fs.symlink(destination, command)
            copied.append(name)

        if missing:
            raise MutationError(
                f"cp {management.source_dir}/*",
                f"missing {', '.join(missing)} (copied {len(copied)} of {len(management.files)})",
            )
        return f"copied {len(copied)} management scripts to {management.bin_dir}"

    def management_backups(self) -> tuple[BackupTarget, ...]:
        management = self._install.management
        copies = tuple(BackupTarget(os.path.join(management.bin_dir, name), "file") for name in management.files)
        commands = tuple(
            BackupTarget(os.path.join(management.link_dir, name.removesuffix(".sh")), "link")
            for name in management.files
        )
        return copies + commands

    def configure_environment(self, context: RunContext) -> str:
        environment = self._install.environment
        pairs = (
            (os.path.join(environment.source_dir, environment.sudoers_source), environment.sudoers_path, 0o440),
            (os.path.join(environment.source_dir, environment.group_source), environment.group_path, 0o644),
        )
        for source, _, _ in pairs:
            if not self._fs.exists(source):
                raise MutationError(f"cp {source}", f"environment file {source} not found")

        for source, destination, mode in pairs:
            with attempt(f"cp {source} {destination}"):
                self._fs.copy(source, destination)
            with attempt(f"chown root:root {destination}"):
                self._fs.chown(destination, 0, 0)
            with attempt(f"chmod {mode:o} {destination}"):
                self._fs.chmod(destination, mode)

        account = self.data_dir.owner
        with attempt(f"read {environment.group_path}"):
            group_text = self._fs.read_text(environment.group_path)
        if account not in group_text:
            logger.warning("'%s' does not appear in %s after copy", account, environment.group_path)
            return f"installed {environment.sudoers_path} and {environment.group_path} ('{account}' not listed)"
        return f"installed {environment.sudoers_path} and {environment.group_path}"

    def environment_backups(self) -> tuple[BackupTarget, ...]:
        environment = self._install.environment
        return (
            BackupTarget(environment.sudoers_path, "file"),
            BackupTarget(environment.group_path, "file"),
        )

    def enable_service(self, context: RunContext) -> str:
        name = self._config.service.name
        if self._host.services.is_enabled(name):
            return f"service '{name}' already enabled"
        with attempt(f"enable {name}"):
            self._host.services.enable(name)
        return f"service '{name}' enabled"

    def start_service(self, context: RunContext) -> str:
        name = self._config.service.name
        if self._host.services.is_active(name):
            return f"service '{name}' already active"
        with attempt(f"start {name}"):
            self._host.services.start(name)
        return f"service '{name}' started"


def build_install_plan(config: ProvisionConfig, host: Host) -> ProvisioningPlan:
    """Assemble the ordered install steps for ``config.install.version``."""
    install = config.install
    steps = InstallSteps(config, host)
    registry = StepRegistry(PLAN_NAME)

    if install.repository.enabled:
        registry.add(
            "add_repository",
            steps.add_repository,
            ordinal=10,
            backups=(
                BackupTarget(install.repository.keyring, "file"),
                BackupTarget(install.repository.list_file, "file"),
            ),
            description="Configure the PostgreSQL package repository and signing key",
        )
    registry.add(
        "install_packages",
        steps.install_packages,
        ordinal=20,
        description="Install the server, contrib and client packages",
    )
    registry.add(
        "create_data_directory",
        steps.create_data_directory,
        ordinal=30,
        backups=(BackupTarget(steps.data_dir.path, "ownership"),),
        description=f"Create {steps.data_dir.path}",
    )
    registry.add(
        "link_data_directory",
        steps.link_data_directory,
        ordinal=40,
        rollback=steps.unlink_data_directory,
        backups=(BackupTarget(steps.cluster_link, "link"),),
        depends_on=("install_packages", "create_data_directory"),
        description=f"Point {steps.cluster_link} at {steps.data_dir.path}",
    )
    registry.add(
        "create_log_directory",
        steps.create_log_directory,
        ordinal=50,
        backups=(BackupTarget(steps.log_dir.path, "ownership"),),
        description=f"Create {steps.log_dir.path}",
    )
    registry.add(
        "create_lock_directory",
        steps.create_lock_directory,
        ordinal=60,
        backups=(BackupTarget(steps.lock_dir.path, "ownership"),),
        description=f"Create {steps.lock_dir.path}",
    )
    if install.management.enabled:
        registry.add(
            "copy_management_files",
            steps.copy_management_files,
            ordinal=70,
            mandatory=False,
            backups=steps.management_backups(),
            description="Copy the start/stop/status/reload helper scripts",
        )
    if install.environment.enabled:
        registry.add(
            "configure_environment",
            steps.configure_environment,
            ordinal=80,
            mandatory=False,
            rollback=restore_backups(host.fs, "configure_environment"),
            backups=steps.environment_backups(),
            description="Install the preconfigured sudoers and group files",
        )
    registry.add(
        "enable_service",
        steps.enable_service,
        ordinal=90,
        depends_on=("install_packages",),
        description=f"Enable the {config.service.name} service at boot",
    )
    registry.add(
        "start_service",
        steps.start_service,
        ordinal=100,
        depends_on=("enable_service",),
        description=f"Start the {config.service.name} service",
    )

    directories = tuple(
        DirectoryExpectation(path=directory.path, owner=directory.owner, group=directory.group, mode=directory.mode)
        for directory in (steps.data_dir, steps.log_dir, steps.lock_dir)
    )
    expectations = Expectations(
        directories=directories,
        services=(config.service.name,),
        endpoint=endpoint_from_config(config) if config.probe.enabled else None,
    )
    requirements = Requirements(require_root=True, inactive_services=(config.service.name,))
    params = {
        "version": install.version,
        "packages": install.rendered_packages(),
        "data_dir": steps.data_dir.path,
        "log_dir": steps.log_dir.path,
        "lock_dir": steps.lock_dir.path,
        "cluster_link": steps.cluster_link,
        "service": config.service.name,
    }
    return ProvisioningPlan(
        name=PLAN_NAME,
        registry=registry,
        requirements=requirements,
        expectations=expectations,
        params=params,
    )
