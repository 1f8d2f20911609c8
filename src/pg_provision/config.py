"""Configuration loading utilities for PostgreSQL host provisioning."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_PG_VERSION = "13"

_VERSION_PATTERN = re.compile(r"^\d+(\.\d+)?$")


def _parse_mode(value: Any) -> int:
    if isinstance(value, str):
        text = value.strip().lower().removeprefix("0o")
        try:
            return int(text, 8)
        except ValueError as exc:
            raise ValueError(f"Invalid octal mode '{value}'") from exc
    if isinstance(value, int):
        return value
    raise ValueError(f"Invalid mode {value!r}")


class DirectoryConfig(BaseModel):
    path: str
    owner: str = "postgres"
    group: str = "postgres"
    mode: int = Field(0o700, description="Permission bits; octal strings such as '0700' are accepted")

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, value: Any) -> int:
        mode = _parse_mode(value)
        if not 0 <= mode <= 0o7777:
            raise ValueError(f"Mode {oct(mode)} is out of range")
        return mode


class RepositoryConfig(BaseModel):
    enabled: bool = True
    name: str = "pgdg"
    url: str = "http://apt.postgresql.org/pub/repos/apt"
    key_url: str = "https://www.postgresql.org/media/keys/ACCC4CF8.asc"
    keyring: str = "/usr/share/keyrings/postgresql-keyring.gpg"
    list_file: str = "/etc/apt/sources.list.d/pgdg.list"
    component: str = "main"


class ManagementFilesConfig(BaseModel):
    enabled: bool = True
    source_dir: str = "/hostdata/app/psql/psql-ubuntu2204/postgres-config-files"
    bin_dir: str = "/var/lib/pgsql/bin"
    link_dir: str = "/usr/local/bin"
    files: list[str] = Field(default_factory=lambda: ["pstart.sh", "pstop.sh", "pstatus.sh", "psreload.sh"])
    mode: int = 0o700

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, value: Any) -> int:
        return _parse_mode(value)


class EnvironmentFilesConfig(BaseModel):
    """Preconfigured sudoers and group files copied over the host's own."""

    enabled: bool = False
    source_dir: str = "/hostdata/data/env_config/psql_config/files"
    sudoers_source: str = "etc_sudoers"
    group_source: str = "etc_group"
    sudoers_path: str = "/etc/sudoers"
    group_path: str = "/etc/group"


class InstallConfig(BaseModel):
    version: str = DEFAULT_PG_VERSION
    package_manager: Literal["apt", "dnf"] = "apt"
    packages: list[str] = Field(
        default_factory=lambda: ["postgresql-{version}", "postgresql-contrib-{version}", "python3-psycopg2"]
    )
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    data_dir: DirectoryConfig = Field(default_factory=lambda: DirectoryConfig(path="/db/pg{version}", mode=0o700))
    log_dir: DirectoryConfig = Field(default_factory=lambda: DirectoryConfig(path="/var/log/postgres", mode=0o700))
    lock_dir: DirectoryConfig = Field(default_factory=lambda: DirectoryConfig(path="/var/run/postgresql", mode=0o755))
    cluster_link: str = Field(
        "/var/lib/postgresql/{version}/data",
        description="Path replaced by a symlink to data_dir; an existing directory is moved aside first",
    )
    original_suffix: str = "_ORIG"
    management: ManagementFilesConfig = Field(default_factory=ManagementFilesConfig)
    environment: EnvironmentFilesConfig = Field(default_factory=EnvironmentFilesConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        value = str(value).strip()
        if not _VERSION_PATTERN.match(value):
            raise ValueError(f"PostgreSQL version must look like '13' or '9.6', got '{value}'")
        return value

    def render(self, template: str) -> str:
        return template.format(version=self.version)

    def rendered_packages(self) -> list[str]:
        return [self.render(package) for package in self.packages]

    def directories(self) -> list[DirectoryConfig]:
        return [
            directory.model_copy(update={"path": self.render(directory.path)})
            for directory in (self.data_dir, self.log_dir, self.lock_dir)
        ]


class MigrationConfig(BaseModel):
    username: str = "postgres"
    new_uid: int = 153
    new_gid: int = 153
    old_uid: Optional[int] = Field(default=None, description="Defaults to the account's current uid")
    old_gid: Optional[int] = Field(default=None, description="Defaults to the account's current gid")
    roots: list[str] = Field(
        default_factory=lambda: [
            "/db",
            "/etc/postgresql",
            "/var/lib/postgresql",
            "/var/log/postgresql",
            "/var/run/postgresql",
            "/usr/lib/postgresql",
        ]
    )
    sweep_roots: list[str] = Field(default_factory=lambda: ["/"])
    sweep_exclude: list[str] = Field(default_factory=lambda: ["/proc", "/sys", "/dev", "/run/user"])
    passwd_file: str = "/etc/passwd"
    group_file: str = "/etc/group"

    @field_validator("new_uid", "new_gid", "old_uid", "old_gid")
    @classmethod
    def validate_id(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 < value < 2**32 - 1:
            raise ValueError(f"Invalid numeric id {value}")
        return value

    @model_validator(mode="after")
    def _ensure_ids_change(self) -> "MigrationConfig":
        if self.old_uid is not None and self.old_uid == self.new_uid:
            raise ValueError("migration.new_uid must differ from migration.old_uid")
        if self.old_gid is not None and self.old_gid == self.new_gid:
            raise ValueError("migration.new_gid must differ from migration.old_gid")
        return self


class ServiceConfig(BaseModel):
    name: str = "postgresql"
    manager: Literal["systemd", "sysv"] = "systemd"


class ProbeConfig(BaseModel):
    enabled: bool = True
    method: Literal["psql", "psycopg2"] = "psql"
    host: str = "/var/run/postgresql"
    port: int = 5432
    dbname: str = "postgres"
    user: str = "postgres"
    password: Optional[str] = None
    connect_timeout: int = 5

    @model_validator(mode="before")
    @classmethod
    def _strip_placeholders(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        if isinstance(values, dict):
            password = values.get("password")
            if isinstance(password, str):
                stripped = password.strip()
                values["password"] = None if not stripped or (stripped.startswith("<") and stripped.endswith(">")) else stripped
        return values


class RunsConfig(BaseModel):
    root: str = Field("/var/lib/pg-provision/runs", description="Run logs, run.json and backups live below this")
    lock_file: str = Field("/run/pg-provision.lock", description="Advisory lock preventing concurrent runs")


class ProvisionConfig(BaseModel):
    install: InstallConfig = Field(default_factory=InstallConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    runs: RunsConfig = Field(default_factory=RunsConfig)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "ProvisionConfig":
        return cls.model_validate(raw or {})

    @classmethod
    def from_yaml(cls, path: Path) -> "ProvisionConfig":
        data = yaml.safe_load(path.read_text())
        return cls.from_dict(data)

    def with_version(self, version: Optional[str]) -> "ProvisionConfig":
        """Return a copy targeting ``version`` (validated like a loaded value)."""
        if version is None:
            return self
        install = InstallConfig.model_validate({**self.install.model_dump(), "version": version})
        return self.model_copy(update={"install": install})


def load_config(path: Optional[str | Path] = None) -> ProvisionConfig:
    """Load a ProvisionConfig from YAML, or the defaults when ``path`` is None."""
    if path is None:
        return ProvisionConfig()
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    return ProvisionConfig.from_yaml(config_path)
