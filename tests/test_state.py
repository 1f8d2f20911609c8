from __future__ import annotations

import json
from datetime import datetime

from pg_provision.backup import BackupHandle, OwnershipEntry
from pg_provision.models import RunContext, StepRecord, StepStatus
from pg_provision.state import RUN_FILE, RunStore, context_to_json, json_to_context


def _context() -> RunContext:
    context = RunContext(
        run_id="20250101_120000-4242",
        plan="migrate-ids",
        params={"username": "postgres", "new_uid": 153},
        started_at=datetime(2025, 1, 1, 12, 0, 0),
    )
    context.steps["change_group_id"] = StepRecord(
        name="change_group_id",
        ordinal=10,
        mandatory=True,
        status=StepStatus.SUCCEEDED,
        detail="group 'postgres' gid 152 -> 153",
        started_at=datetime(2025, 1, 1, 12, 0, 1),
        finished_at=datetime(2025, 1, 1, 12, 0, 2),
    )
    context.steps["sweep_old_ownership"] = StepRecord(
        name="sweep_old_ownership",
        ordinal=50,
        mandatory=False,
        status=StepStatus.FAILED,
        operation="chown /home/legacy",
        error="Permission denied",
    )
    context.backups.append(
        BackupHandle(
            kind="file",
            source="/etc/group",
            location="/runs/20250101_120000-4242/backup/etc/group",
            step="change_group_id",
            created_at=datetime(2025, 1, 1, 12, 0, 1),
            entries=(OwnershipEntry("/etc/group", "root", "root", 0, 0, 0o644),),
        )
    )
    context.status = "completed_with_warnings"
    context.exit_code = 2
    context.backup_root = "/runs/20250101_120000-4242/backup"
    return context


def test_context_round_trips_through_json() -> None:
    original = _context()

    restored = json_to_context(json.loads(json.dumps(context_to_json(original))))

    assert restored.run_id == original.run_id
    assert restored.steps["change_group_id"].status == StepStatus.SUCCEEDED
    assert restored.steps["change_group_id"].finished_at == datetime(2025, 1, 1, 12, 0, 2)
    assert restored.steps["sweep_old_ownership"].mandatory is False
    assert restored.backups[0].entries[0].mode == 0o644
    assert restored.exit_code == 2
    assert restored.backup_root == original.backup_root


def test_store_saves_and_lists_runs(tmp_path) -> None:
    store = RunStore(tmp_path / "runs")
    context = _context()
    run_dir = store.create(context.run_id)

    path = store.save(context)

    assert path == run_dir / RUN_FILE
    assert store.exists(context.run_id)
    assert store.get(context.run_id).status == "completed_with_warnings"
    assert [run.run_id for run in store.list_runs()] == [context.run_id]
    assert store.get("missing") is None


def test_run_directories_are_never_reused(tmp_path) -> None:
    store = RunStore(tmp_path / "runs")

    first = store.create("20250101_120000-4242")
    second = store.create("20250101_120000-4242")

    assert first.name == "20250101_120000-4242"
    assert second.name == "20250101_120000-4242.1"
    assert store.log_path(second.name) == second / "run.log"
