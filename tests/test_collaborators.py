from __future__ import annotations

import pytest
import requests

from pg_provision.apt import AptPackageManager, PackageError, RepositorySpec, read_os_codename
from pg_provision.postgres import Endpoint, ProbeError, PsqlProbe
from pg_provision.shell import CommandError, CommandResult
from pg_provision.systemd import SysvServiceManager


def _spec(tmp_path) -> RepositorySpec:
    return RepositorySpec(
        name="pgdg",
        url="http://apt.postgresql.org/pub/repos/apt",
        key_url="https://www.postgresql.org/media/keys/ACCC4CF8.asc",
        keyring=str(tmp_path / "postgresql-keyring.gpg"),
        list_file=str(tmp_path / "pgdg.list"),
    )


class _Response:
    content = b"-----BEGIN PGP PUBLIC KEY BLOCK-----"

    def raise_for_status(self) -> None:
        return None


def test_read_os_codename(tmp_path) -> None:
    os_release = tmp_path / "os-release"
    os_release.write_text('NAME="Ubuntu"\nVERSION_CODENAME=jammy\n')

    assert read_os_codename(str(os_release)) == "jammy"


def test_add_repository_fetches_key_and_writes_list(tmp_path, monkeypatch) -> None:
    spec = _spec(tmp_path)
    calls: list[list[str]] = []

    def fake_run(cmd, **kwargs):
        calls.append(list(cmd))
        assert kwargs["input_bytes"] == _Response.content
        (tmp_path / "postgresql-keyring.gpg").write_bytes(b"dearmored")
        return CommandResult(list(cmd), 0, "", "", 0.0)

    monkeypatch.setattr("pg_provision.apt.requests.get", lambda url, timeout: _Response())
    monkeypatch.setattr("pg_provision.apt.run", fake_run)
    manager = AptPackageManager(codename="jammy")

    assert manager.add_repository(spec) is True
    assert calls[0][:2] == ["gpg", "--dearmor"]
    expected = f"deb [signed-by={spec.keyring}] {spec.url} jammy-pgdg main\n"
    assert (tmp_path / "pgdg.list").read_text() == expected
    assert manager.add_repository(spec) is False
    assert len(calls) == 1


def test_add_repository_download_failure(tmp_path, monkeypatch) -> None:
    def failing_get(url, timeout):
        raise requests.ConnectionError("network unreachable")

    monkeypatch.setattr("pg_provision.apt.requests.get", failing_get)

    with pytest.raises(PackageError) as excinfo:
        AptPackageManager(codename="jammy").add_repository(_spec(tmp_path))

    assert excinfo.value.operation.startswith("GET https://www.postgresql.org")


def test_install_failure_carries_apt_operation(monkeypatch) -> None:
    def fake_run(cmd, **kwargs):
        if cmd[1] == "install":
            raise CommandError(cmd, 100, "E: Unable to locate package postgresql-99")
        return CommandResult(list(cmd), 0, "", "", 0.0)

    monkeypatch.setattr("pg_provision.apt.run", fake_run)

    with pytest.raises(PackageError) as excinfo:
        AptPackageManager(codename="jammy").install(["postgresql-99"])

    assert excinfo.value.operation == "apt-get install -y postgresql-99"
    assert "Unable to locate package" in str(excinfo.value)


def test_psql_probe_maps_failures(monkeypatch) -> None:
    def fake_run(cmd, **kwargs):
        raise CommandError(cmd, 2, "psql: error: connection to server failed")

    monkeypatch.setattr("pg_provision.postgres.run", fake_run)

    with pytest.raises(ProbeError, match="connection to server failed"):
        PsqlProbe().try_connect(Endpoint())


def test_sysv_status_reads_online_marker(monkeypatch) -> None:
    outputs = {"status": "13/main (port 5432): online\n"}

    def fake_run(cmd, **kwargs):
        return CommandResult(list(cmd), 0, outputs.get(cmd[-1], ""), "", 0.0)

    monkeypatch.setattr("pg_provision.systemd.run", fake_run)
    manager = SysvServiceManager()

    assert manager.is_active("postgresql") is True
    outputs["status"] = "13/main (port 5432): down\n"
    assert manager.is_active("postgresql") is False
