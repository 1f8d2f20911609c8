"""Bundle of the OS collaborators a provisioning run talks to."""
from __future__ import annotations

from dataclasses import dataclass

from .accounts import DirectoryService, PosixDirectoryService
from .apt import AptPackageManager, DnfPackageManager, PackageManager
from .config import ProvisionConfig
from .filesystem import Filesystem, LocalFilesystem
from .ipc import SharedMemory, SysvSharedMemory
from .postgres import ConnectivityProbe, Endpoint, Psycopg2Probe, PsqlProbe
from .systemd import ServiceManager, SystemdServiceManager, SysvServiceManager


@dataclass(slots=True)
class Host:
    packages: PackageManager
    fs: Filesystem
    directory: DirectoryService
    services: ServiceManager
    probe: ConnectivityProbe
    shm: SharedMemory

    @classmethod
    def local(cls, config: ProvisionConfig) -> "Host":
        packages: PackageManager
        if config.install.package_manager == "dnf":
            packages = DnfPackageManager()
        else:
            packages = AptPackageManager()
        services: ServiceManager
        if config.service.manager == "sysv":
            services = SysvServiceManager()
        else:
            services = SystemdServiceManager()
        probe: ConnectivityProbe = Psycopg2Probe() if config.probe.method == "psycopg2" else PsqlProbe()
        return cls(
            packages=packages,
            fs=LocalFilesystem(),
            directory=PosixDirectoryService(),
            services=services,
            probe=probe,
            shm=SysvSharedMemory(),
        )


def endpoint_from_config(config: ProvisionConfig) -> Endpoint:
    probe = config.probe
    return Endpoint(
        host=probe.host,
        port=probe.port,
        dbname=probe.dbname,
        user=probe.user,
        password=probe.password,
        connect_timeout=probe.connect_timeout,
    )
