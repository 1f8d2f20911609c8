from __future__ import annotations

from pg_provision.migration import build_migration_plan, resolve_change
from pg_provision.models import ExitCode, StepStatus
from pg_provision.service import ProvisioningService
from pg_provision.state import RunStore


def _populate(fs) -> None:
    fs.add_dir("/db", uid=152, gid=152, mode=0o700)
    fs.add_dir("/db/pg13", uid=152, gid=152, mode=0o700)
    fs.add_dir("/db/pg13/base", uid=152, gid=152, mode=0o700)
    fs.add_file("/db/pg13/PG_VERSION", "13\n", uid=152, gid=152, mode=0o600)
    fs.add_dir("/etc/postgresql/13/main", uid=152, gid=152)
    fs.add_dir("/var/lib/postgresql", uid=152, gid=152)
    fs.add_file("/home/legacy/.psql_history", uid=152, gid=152)
    fs.add_file("/tmp/.s.PGSQL.5432.lock", uid=0, gid=152)
    fs.add_dir("/proc/4242", uid=152, gid=152)


def _service(host, config, answer: bool = True) -> ProvisioningService:
    prompts: list[str] = []

    def confirm(prompt: str) -> bool:
        prompts.append(prompt)
        return answer

    service = ProvisioningService(host, RunStore(config.runs.root), confirm=confirm, echo=False)
    service.prompts = prompts  # type: ignore[attr-defined]
    return service


def _paths_owned_by(fs, uid: int, gid: int, exclude: tuple[str, ...] = ("/proc",)) -> list[str]:
    return [
        path
        for path in fs.walk("/", exclude=exclude)
        if fs.stat(path).uid == uid or fs.stat(path).gid == gid
    ]


def test_old_ids_default_to_current_account(host, config) -> None:
    change = resolve_change(config, host)

    assert (change.old_uid, change.old_gid, change.new_uid, change.new_gid) == (152, 152, 153, 153)


def test_plan_steps_and_confirmation(host, config) -> None:
    plan = build_migration_plan(config, host)

    assert plan.registry.names() == [
        "change_group_id",
        "change_user_id",
        "confirm_ids",
        "restamp_ownership",
        "sweep_old_ownership",
        "release_shared_memory",
    ]
    assert [step.name for step in plan.registry if not step.mandatory] == [
        "sweep_old_ownership",
        "release_shared_memory",
    ]
    assert "152/152 to 153/153" in plan.confirmation
    assert plan.requirements.forbidden_user == "postgres"


def test_migration_moves_account_and_leaves_no_old_ownership(host, config) -> None:
    _populate(host.fs)
    host.shm.segments = {32768: 152, 32769: 0}
    service = _service(host, config)

    report = service.run(build_migration_plan(config, host))

    assert report.exit_code == ExitCode.OK, report.error
    assert report.status == "succeeded"
    identity = host.directory.lookup_user("postgres")
    assert (identity.uid, identity.gid) == (153, 153)
    assert host.directory.calls[:2] == [("groupmod", "postgres", 153), ("usermod", "postgres", 153)]
    assert _paths_owned_by(host.fs, 152, 152) == []
    assert host.fs.stat("/db/pg13/PG_VERSION").owner == "postgres"
    assert host.fs.stat("/tmp/.s.PGSQL.5432.lock").uid == 0
    assert host.fs.stat("/tmp/.s.PGSQL.5432.lock").gid == 153
    assert host.fs.stat("/proc/4242").uid == 152
    assert host.shm.removed == [32768]
    assert report.context.notes["missing_roots"] == [
        "/var/log/postgresql",
        "/var/run/postgresql",
        "/usr/lib/postgresql",
    ]
    assert report.verification.passed
    assert len(service.prompts) == 1


def test_password_and_group_files_are_backed_up_first(host, config) -> None:
    _populate(host.fs)

    report = _service(host, config).run(build_migration_plan(config, host))

    sources = [(handle.step, handle.source) for handle in report.context.backups]
    assert sources[:2] == [("change_group_id", "/etc/group"), ("change_user_id", "/etc/passwd")]
    assert ("restamp_ownership", "/db") in sources
    manifest = next(handle for handle in report.context.backups if handle.source == "/db")
    assert all(entry.uid == 152 for entry in manifest.entries)


def test_declined_confirmation_changes_nothing(host, config) -> None:
    _populate(host.fs)
    before = list(host.fs.mutations)

    report = _service(host, config, answer=False).run(build_migration_plan(config, host))

    assert report.exit_code == ExitCode.OK
    assert report.status == "cancelled"
    assert host.directory.calls == []
    assert host.fs.mutations == before
    assert all(record.status == StepStatus.PENDING for record in report.context.steps.values())


def test_taken_uid_fails_preflight(host, config) -> None:
    host.directory.add_user("monitor", 153, 900)

    report = _service(host, config).run(build_migration_plan(config, host))

    assert report.exit_code == ExitCode.PREFLIGHT
    assert "UID 153 is already in use by 'monitor'" in report.error
    assert host.directory.calls == []


def test_user_id_failure_reverts_group_when_compensating(host, config) -> None:
    _populate(host.fs)
    host.directory.fail_set_uid = "usermod: user postgres is currently used by process 901"
    service = ProvisioningService(host, RunStore(config.runs.root), confirm=lambda _: True, compensate=True, echo=False)

    report = service.run(build_migration_plan(config, host))

    assert report.exit_code == ExitCode.FAILED
    assert report.context.status_of("change_user_id") == StepStatus.FAILED
    assert report.context.status_of("confirm_ids") == StepStatus.PENDING
    assert host.directory.groups["postgres"] == 152
    assert host.directory.calls[-1] == ("groupmod", "postgres", 152)
    assert "currently used by process 901" in report.error


def test_sweep_counts_unreadable_entries(host, config) -> None:
    _populate(host.fs)
    host.fs.add_dir("/mnt/secret/inner", uid=152, gid=152)
    host.fs.denied.add("/mnt/secret")

    report = _service(host, config).run(build_migration_plan(config, host))

    assert report.context.status_of("sweep_old_ownership") == StepStatus.SUCCEEDED
    assert report.context.notes["sweep"]["skipped"] >= 1


def test_second_run_after_migration_is_a_no_op(host, config) -> None:
    _populate(host.fs)
    host.shm.segments = {40000: 153}
    first = _service(host, config).run(build_migration_plan(config, host))
    assert first.exit_code == ExitCode.OK, first.error
    calls = list(host.directory.calls)

    second = _service(host, config).run(build_migration_plan(config, host))

    assert second.exit_code == ExitCode.OK, second.error
    assert second.status == "succeeded"
    assert host.directory.calls == calls
    assert second.context.steps["change_group_id"].detail == "group 'postgres' already has gid 153"
    assert second.context.steps["change_user_id"].detail == "user 'postgres' already has uid 153"
    assert second.context.notes["sweep"] == {"changed": 0, "skipped": 0}
    assert host.shm.segments == {40000: 153}
    assert "no_old_ownership" not in [check.name for check in second.verification.checks]


def test_rerun_resumes_after_user_id_failure(host, config) -> None:
    _populate(host.fs)
    host.directory.fail_set_uid = "usermod: user postgres is currently used by process 901"
    first = _service(host, config).run(build_migration_plan(config, host))
    assert first.exit_code == ExitCode.FAILED
    assert host.directory.groups["postgres"] == 153

    host.directory.fail_set_uid = None
    resumed = config.model_copy(update={"migration": config.migration.model_copy(update={"old_gid": 152})})
    second = _service(host, config).run(build_migration_plan(resumed, host))

    assert second.exit_code == ExitCode.OK, second.error
    assert second.context.steps["change_group_id"].detail == "group 'postgres' already has gid 153"
    assert host.directory.calls[-1] == ("usermod", "postgres", 153)
    assert _paths_owned_by(host.fs, 152, 152) == []
    assert second.verification.passed
