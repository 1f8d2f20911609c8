"""CLI entrypoint for PostgreSQL host provisioning."""
from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from dotenv import load_dotenv

from .config import MigrationConfig, ProvisionConfig, load_config
from .host import Host
from .install import build_install_plan
from .lock import LockHeldError, RunLock
from .migration import build_migration_plan
from .models import ExitCode
from .service import ProvisioningPlan, ProvisioningService, RunReport
from .state import RunStore, context_to_json


def _configure_logging() -> None:
    env_level = os.getenv("PG_PROVISION_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, env_level, None)
    if not isinstance(level, int):
        level = logging.INFO
        logging.warning(
            "Unrecognized PG_PROVISION_LOG_LEVEL '%s'; defaulting to INFO",
            env_level,
        )
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")


load_dotenv(Path.cwd() / ".env", override=False)
_configure_logging()

app = typer.Typer(help="Idempotent PostgreSQL host provisioning")

CONFIG_OPTION_HELP = "Path to provisioning config YAML (defaults apply when omitted)"


class PlanKind(str, Enum):
    install = "install"
    migrate_ids = "migrate-ids"


def _fail(message: str, code: int = ExitCode.FAILED) -> typer.Exit:
    typer.secho(message, fg=typer.colors.RED, err=True)
    return typer.Exit(code=int(code))


def _load(config: Optional[Path]) -> ProvisionConfig:
    try:
        return load_config(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        raise _fail(f"Invalid configuration: {exc}") from exc


def _confirm(prompt: str) -> bool:
    # Closed stdin or Ctrl-C at the prompt counts as a refusal.
    try:
        return typer.confirm(prompt, default=False)
    except typer.Abort:
        return False


def _service(
    settings: ProvisionConfig, host: Host, *, compensate: bool = False, assume_yes: bool = False
) -> ProvisioningService:
    confirm = (lambda _prompt: True) if assume_yes else _confirm
    try:
        store = RunStore(settings.runs.root)
    except PermissionError as exc:
        raise _fail(f"Cannot create run directory {settings.runs.root}: run as root", ExitCode.PREFLIGHT) from exc
    return ProvisioningService(
        host,
        store,
        RunLock(settings.runs.lock_file),
        confirm=confirm,
        compensate=compensate,
    )


def _report_payload(report: RunReport) -> dict[str, Any]:
    context = report.context
    payload: dict[str, Any] = {
        "run_id": context.run_id,
        "plan": context.plan,
        "status": context.status,
        "exit_code": int(report.exit_code),
        "run_dir": str(report.run_dir),
        "steps": [
            {
                "name": record.name,
                "status": record.status.value,
                "mandatory": record.mandatory,
                "detail": record.detail,
                "error": record.error,
            }
            for record in sorted(context.steps.values(), key=lambda item: item.ordinal)
        ],
    }
    if report.verification is not None:
        payload["verification"] = [
            {"check": check.name, "passed": check.passed, "reason": check.reason}
            for check in report.verification.checks
        ]
    if report.error:
        payload["error"] = report.error
    if context.rollback_errors:
        payload["rollback_errors"] = list(context.rollback_errors)
    return payload


def _execute(service: ProvisioningService, plan: ProvisioningPlan) -> None:
    try:
        report = service.run(plan)
    except LockHeldError as exc:
        raise _fail(str(exc), ExitCode.LOCKED) from exc
    except PermissionError as exc:
        raise _fail(f"Permission denied: {exc}; run as root", ExitCode.PREFLIGHT) from exc

    typer.echo(json.dumps(_report_payload(report), indent=2))
    if report.exit_code != ExitCode.OK:
        raise typer.Exit(code=int(report.exit_code))


def _with_version(settings: ProvisionConfig, version: Optional[str]) -> ProvisionConfig:
    try:
        return settings.with_version(version)
    except ValueError as exc:
        raise _fail(f"Invalid version '{version}': {exc}") from exc


def _with_migration(settings: ProvisionConfig, overrides: dict[str, Any]) -> ProvisionConfig:
    values = {key: value for key, value in overrides.items() if value is not None}
    if not values:
        return settings
    try:
        migration = MigrationConfig.model_validate({**settings.migration.model_dump(), **values})
    except ValueError as exc:
        raise _fail(f"Invalid migration parameters: {exc}") from exc
    return settings.model_copy(update={"migration": migration})


@app.command("install")
def install(
    version: Optional[str] = typer.Argument(None, help="PostgreSQL major version (default 13)"),
    config: Optional[Path] = typer.Option(
        None, envvar="PG_PROVISION_CONFIG", exists=True, readable=True, help=CONFIG_OPTION_HELP
    ),
    compensate: bool = typer.Option(
        False, "--compensate", help="Roll back completed steps in reverse order when a mandatory step fails"
    ),
) -> None:
    """Install and configure PostgreSQL on this host."""

    settings = _with_version(_load(config), version)
    host = Host.local(settings)
    service = _service(settings, host, compensate=compensate)
    _execute(service, build_install_plan(settings, host))


@app.command("migrate-ids")
def migrate_ids(
    config: Optional[Path] = typer.Option(
        None, envvar="PG_PROVISION_CONFIG", exists=True, readable=True, help=CONFIG_OPTION_HELP
    ),
    username: Optional[str] = typer.Option(None, help="Service account to migrate"),
    new_uid: Optional[int] = typer.Option(None, help="Target uid"),
    new_gid: Optional[int] = typer.Option(None, help="Target gid"),
    old_uid: Optional[int] = typer.Option(None, help="Current uid (looked up when omitted)"),
    old_gid: Optional[int] = typer.Option(None, help="Current gid (looked up when omitted)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Move the service account to new uid/gid values and re-own its files."""

    settings = _with_migration(
        _load(config),
        {"username": username, "new_uid": new_uid, "new_gid": new_gid, "old_uid": old_uid, "old_gid": old_gid},
    )
    host = Host.local(settings)
    service = _service(settings, host, assume_yes=yes)
    _execute(service, build_migration_plan(settings, host))


@app.command("plan")
def show_plan(
    kind: PlanKind = typer.Argument(..., help="Which step sequence to describe"),
    version: Optional[str] = typer.Argument(None, help="PostgreSQL version for the install plan"),
    config: Optional[Path] = typer.Option(
        None, envvar="PG_PROVISION_CONFIG", exists=True, readable=True, help=CONFIG_OPTION_HELP
    ),
) -> None:
    """Print the resolved parameters and ordered steps without changing anything."""

    settings = _with_version(_load(config), version)
    host = Host.local(settings)
    plan = build_install_plan(settings, host) if kind == PlanKind.install else build_migration_plan(settings, host)
    typer.echo(
        json.dumps(
            {
                "plan": plan.name,
                "params": plan.params,
                "requires_confirmation": plan.confirmation is not None,
                "steps": [
                    {
                        "ordinal": step.ordinal,
                        "name": step.name,
                        "mandatory": step.mandatory,
                        "depends_on": list(step.depends_on),
                        "backups": [target.path for target in step.backups],
                        "description": step.description,
                    }
                    for step in plan.registry.ordered()
                ],
            },
            indent=2,
            default=str,
        )
    )


@app.command("restore")
def restore(
    run_id: str,
    config: Optional[Path] = typer.Option(
        None, envvar="PG_PROVISION_CONFIG", exists=True, readable=True, help=CONFIG_OPTION_HELP
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Put back every backup taken by a recorded run, newest first."""

    settings = _load(config)
    if not yes and not _confirm(f"Restore all backups of run {run_id}?"):
        typer.echo("Restore cancelled")
        return
    service = _service(settings, Host.local(settings))
    try:
        result = service.restore_run(run_id)
    except ValueError as exc:
        raise _fail(str(exc)) from exc
    except LockHeldError as exc:
        raise _fail(str(exc), ExitCode.LOCKED) from exc

    typer.echo(json.dumps({"run_id": result.run_id, "restored": result.restored, "errors": result.errors}, indent=2))
    if result.errors:
        typer.secho(
            "Some backups could not be restored; manual intervention required.",
            fg=typer.colors.YELLOW,
            err=True,
        )
        raise typer.Exit(code=int(ExitCode.FAILED))


@app.command("show-run")
def show_run(
    run_id: str,
    config: Optional[Path] = typer.Option(
        None, envvar="PG_PROVISION_CONFIG", exists=True, readable=True, help=CONFIG_OPTION_HELP
    ),
) -> None:
    """Print the recorded context of a past run."""

    settings = _load(config)
    try:
        context = RunStore(settings.runs.root).get(run_id)
    except OSError as exc:
        raise _fail(f"Cannot read runs under {settings.runs.root}: {exc}") from exc
    if context is None:
        raise _fail(f"No recorded run '{run_id}' under {settings.runs.root}")
    typer.echo(json.dumps(context_to_json(context), indent=2, default=str))


if __name__ == "__main__":
    app()
