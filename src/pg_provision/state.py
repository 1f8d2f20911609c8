"""Persistence of run contexts as audit artifacts."""
from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from .backup import BackupHandle, OwnershipEntry
from .models import RunContext, StepRecord, StepStatus

RUN_FILE = "run.json"
LOG_FILE = "run.log"
BACKUP_DIR = "backup"


def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat()


def _deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _entry_to_json(entry: OwnershipEntry) -> dict:
    return {
        "path": entry.path,
        "owner": entry.owner,
        "group": entry.group,
        "uid": entry.uid,
        "gid": entry.gid,
        "mode": f"{entry.mode:04o}",
        "is_symlink": entry.is_symlink,
    }


def _json_to_entry(data: dict) -> OwnershipEntry:
    return OwnershipEntry(
        path=data["path"],
        owner=data["owner"],
        group=data["group"],
        uid=data["uid"],
        gid=data["gid"],
        mode=int(data["mode"], 8),
        is_symlink=data.get("is_symlink", False),
    )


def _handle_to_json(handle: BackupHandle) -> dict:
    payload: dict[str, Any] = {
        "kind": handle.kind,
        "source": handle.source,
        "location": handle.location,
        "step": handle.step,
        "created_at": _serialize_datetime(handle.created_at),
    }
    # Ownership entries live in the manifest next to the copy.
    if handle.kind == "file":
        payload["entries"] = [_entry_to_json(entry) for entry in handle.entries]
    return payload


def _json_to_handle(data: dict) -> BackupHandle:
    return BackupHandle(
        kind=data["kind"],
        source=data["source"],
        location=data["location"],
        step=data["step"],
        created_at=_deserialize_datetime(data["created_at"]) or datetime.now(),
        entries=tuple(_json_to_entry(item) for item in data.get("entries", [])),
    )


def _record_to_json(record: StepRecord) -> dict:
    return {
        "name": record.name,
        "ordinal": record.ordinal,
        "mandatory": record.mandatory,
        "status": record.status.value,
        "detail": record.detail,
        "operation": record.operation,
        "error": record.error,
        "started_at": _serialize_datetime(record.started_at),
        "finished_at": _serialize_datetime(record.finished_at),
    }


def _json_to_record(data: dict) -> StepRecord:
    return StepRecord(
        name=data["name"],
        ordinal=data["ordinal"],
        mandatory=data["mandatory"],
        status=StepStatus(data["status"]),
        detail=data.get("detail"),
        operation=data.get("operation"),
        error=data.get("error"),
        started_at=_deserialize_datetime(data.get("started_at")),
        finished_at=_deserialize_datetime(data.get("finished_at")),
    )


def context_to_json(context: RunContext) -> dict:
    return {
        "run_id": context.run_id,
        "plan": context.plan,
        "params": context.params,
        "started_at": _serialize_datetime(context.started_at),
        "finished_at": _serialize_datetime(context.finished_at),
        "status": context.status,
        "exit_code": context.exit_code,
        "backup_root": context.backup_root,
        "steps": [_record_to_json(record) for record in context.steps.values()],
        "backups": [_handle_to_json(handle) for handle in context.backups],
        "rollback_errors": list(context.rollback_errors),
        "notes": context.notes,
    }


def json_to_context(data: dict) -> RunContext:
    context = RunContext(
        run_id=data["run_id"],
        plan=data["plan"],
        params=data.get("params", {}),
        started_at=_deserialize_datetime(data["started_at"]) or datetime.now(),
    )
    for item in data.get("steps", []):
        record = _json_to_record(item)
        context.steps[record.name] = record
    context.backups = [_json_to_handle(item) for item in data.get("backups", [])]
    context.rollback_errors = list(data.get("rollback_errors", []))
    context.notes = data.get("notes", {})
    context.status = data.get("status", "pending")
    context.exit_code = data.get("exit_code")
    context.finished_at = _deserialize_datetime(data.get("finished_at"))
    context.backup_root = data.get("backup_root")
    return context


class RunStore:
    """One directory per run below ``root``; a run directory is never reused."""

    def __init__(self, root_path: str | Path):
        self._root = Path(root_path).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    @property
    def root(self) -> Path:
        return self._root

    def run_dir(self, run_id: str) -> Path:
        safe_name = run_id.replace("/", "_")
        return self._root / safe_name

    def create(self, run_id: str) -> Path:
        """Create a fresh run directory; a taken name gets a numeric suffix."""
        path = self.run_dir(run_id)
        counter = 1
        while True:
            try:
                path.mkdir(parents=False, exist_ok=False)
                return path
            except FileExistsError:
                path = self.run_dir(f"{run_id}.{counter}")
                counter += 1

    def log_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / LOG_FILE

    def backup_root(self, run_id: str) -> Path:
        return self.run_dir(run_id) / BACKUP_DIR

    def save(self, context: RunContext) -> Path:
        path = self.run_dir(context.run_id) / RUN_FILE
        with self._lock:
            payload = context_to_json(context)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str))
            os.replace(tmp_path, path)
        return path

    def get(self, run_id: str) -> Optional[RunContext]:
        path = self.run_dir(run_id) / RUN_FILE
        if not path.exists():
            return None
        return json_to_context(json.loads(path.read_text()))

    def exists(self, run_id: str) -> bool:
        return (self.run_dir(run_id) / RUN_FILE).exists()

    def list_runs(self) -> list[RunContext]:
        runs: list[RunContext] = []
        for path in sorted(self._root.glob(f"*/{RUN_FILE}")):
            runs.append(json_to_context(json.loads(path.read_text())))
        return runs
