"""
HOMESERVER Panel Migration Tool
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Restore Orchestrator

Drives a restore through PRECHECK -> DB_RECONCILE -> RUNTIME_RECONCILE ->
EXTRACT -> SERVICE_RESTART -> HEALTH_CHECK -> DONE. Any fatal failure moves
the run to ABORT and propagates. Service restarts and extension installs are
best-effort: their failures are collected for the final summary.

In dry-run mode the same action sequence is produced and handed to a
DryRunRunner, so every read-only step (verification, manifest read-back,
planning, health check) still runs while nothing is changed.
"""

import os
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Type

from panelmigrate.utils.index import log_message
from panelmigrate.utils.actions import Action, ActionKind, ActionResult, make_runner
from panelmigrate.utils.checksummer import raise_for_result, verify
from panelmigrate.utils.errors import (
    AbortedByOperator,
    EnvironmentConflictError,
    MigrationError,
    PreconditionError,
)
from panelmigrate.modules.inspector import PhpExtensionLister, capture
from panelmigrate.modules.archiver import Manifest, list_archives, read_manifest_from_archive
from panelmigrate.modules.reconciler import (
    ConflictResolution,
    Decision,
    PlanItem,
    ReconciliationPlan,
    plan,
    plan_extensions,
    resolve_conflict,
)
from .health import HealthReport, check_ports, fpm_service_name, run_health_check


class RestoreState(Enum):
    PRECHECK = "PRECHECK"
    DB_RECONCILE = "DB_RECONCILE"
    RUNTIME_RECONCILE = "RUNTIME_RECONCILE"
    EXTRACT = "EXTRACT"
    SERVICE_RESTART = "SERVICE_RESTART"
    HEALTH_CHECK = "HEALTH_CHECK"
    DONE = "DONE"
    ABORT = "ABORT"


NEXT_STATE = {
    None: RestoreState.PRECHECK,
    RestoreState.PRECHECK: RestoreState.DB_RECONCILE,
    RestoreState.DB_RECONCILE: RestoreState.RUNTIME_RECONCILE,
    RestoreState.RUNTIME_RECONCILE: RestoreState.EXTRACT,
    RestoreState.EXTRACT: RestoreState.SERVICE_RESTART,
    RestoreState.SERVICE_RESTART: RestoreState.HEALTH_CHECK,
    RestoreState.HEALTH_CHECK: RestoreState.DONE,
}


@dataclass
class RestoreReport:
    dry_run: bool
    archive: Optional[str] = None
    manifest: Optional[Manifest] = None
    plan: Optional[ReconciliationPlan] = None
    states: List[RestoreState] = field(default_factory=list)
    actions: List[ActionResult] = field(default_factory=list)
    best_effort_failures: List[ActionResult] = field(default_factory=list)
    health: Optional[HealthReport] = None
    error: Optional[MigrationError] = None

    @property
    def state(self) -> Optional[RestoreState]:
        return self.states[-1] if self.states else None

    @property
    def planned_actions(self) -> List[Action]:
        return [result.action for result in self.actions]


class RestoreOrchestrator:
    """Sequences verification, reconciliation, extraction and service restarts."""

    def __init__(self, config, prompter, runner=None,
                 inspect: Callable = capture,
                 extension_lister=None,
                 is_root: Optional[Callable[[], bool]] = None,
                 health_check: Callable[..., HealthReport] = run_health_check,
                 port_check: Callable = check_ports):
        self.config = config
        self.prompter = prompter
        self.runner = runner or make_runner(config)
        self.inspect = inspect
        self.extension_lister = extension_lister or PhpExtensionLister(config.runtime_dir)
        self.is_root = is_root or (lambda: os.geteuid() == 0)
        self.health_check = health_check
        self.port_check = port_check
        self.report = RestoreReport(dry_run=config.dry_run)

    def _advance(self) -> None:
        state = NEXT_STATE[self.report.state]
        self.report.states.append(state)
        log_message(f"[RESTORE] >>> {state.value}")

    def _execute(self, action: Action, error_class: Type[MigrationError] = EnvironmentConflictError) -> ActionResult:
        result = self.runner.run(action)
        self.report.actions.append(result)
        if result.success:
            return result
        if action.best_effort:
            log_message(f"[RESTORE] Best-effort step failed, continuing: {action.describe()}", "WARNING")
            self.report.best_effort_failures.append(result)
            return result
        raise error_class(f"{action.kind.value} failed", f"{action.target}: {result.detail}")

    def run(self, archive_path: Optional[str] = None) -> RestoreReport:
        """
        Restore an archive onto this host.

        Args:
            archive_path: Archive to restore; defaults to the newest one in the backup directory

        Returns:
            RestoreReport: States visited, actions considered, best-effort failures and health

        Raises:
            MigrationError: any fatal failure, after the report has moved to ABORT
        """
        mode = "DRY-RUN (no changes will be made)" if self.runner.dry_run else "LIVE"
        log_message(f"[RESTORE] Starting restore, mode: {mode}")

        try:
            self._advance()
            archive, manifest = self._precheck(archive_path)

            self._advance()
            installed = self.inspect(self.config)
            self.report.plan = plan(manifest, installed, self.config.panel_cli)
            self._reconcile_database(self.report.plan.database)

            self._advance()
            self._reconcile_runtimes(self.report.plan, manifest)

            self._advance()
            self._extract(archive)

            self._advance()
            self._restart_services(manifest)

            self._advance()
            self.report.health = self.health_check(self.config, manifest.environment.runtime_versions)

            self._advance()
        except MigrationError as e:
            self.report.error = e
            self.report.states.append(RestoreState.ABORT)
            log_message(f"[RESTORE] >>> ABORT: {e.describe()}", "ERROR")
            raise

        self._summarize()
        return self.report

    def _precheck(self, archive_path: Optional[str]):
        if not self.is_root():
            raise PreconditionError("root privilege required", "run as root")

        if archive_path is None:
            entries = list_archives(self.config.backup_dir, self.config.prefix)
            if not entries:
                raise PreconditionError("no backup found", self.config.backup_dir)
            archive_path = entries[0].path
        log_message(f"[RESTORE] Archive: {archive_path}")
        self.report.archive = archive_path

        result = verify(archive_path, self.config.required_prefixes, produced_locally=False)
        raise_for_result(result)
        log_message("[RESTORE] ✓ Archive verified")

        manifest = read_manifest_from_archive(archive_path, self.config.manifest_name, self.config.manifest_path)
        self.report.manifest = manifest
        env = manifest.environment
        log_message(f"[RESTORE] Backup from {env.os}, created {manifest.backup_date} by {manifest.app_name} {manifest.version}")
        log_message(f"[RESTORE] Recorded database: {env.database_engine} {env.database_version}")
        log_message(f"[RESTORE] Recorded PHP runtimes: {', '.join(env.runtime_versions) or 'none'}")

        self.port_check(self.config.health_ports)

        if not self.prompter.confirm("A provider snapshot of this host is recommended before restore. Continue?"):
            raise AbortedByOperator("snapshot reminder declined")

        return archive_path, manifest

    def _reconcile_database(self, item: PlanItem) -> None:
        if item.decision == Decision.NOOP:
            log_message(f"[RESTORE] Database: nothing to do ({item.installed})")
            return

        if item.decision == Decision.ABORT:
            raise EnvironmentConflictError("database cannot be reconciled", item.note)

        if item.decision == Decision.INSTALL:
            if not self.prompter.confirm(f"Install {item.recorded}?"):
                raise AbortedByOperator("database install declined", item.recorded)
            for action in item.actions:
                self._execute(action)
            return

        log_message(f"[RESTORE] Installed DB: {item.installed}")
        log_message(f"[RESTORE] Required DB : {item.recorded}")
        log_message(f"[RESTORE] {item.note}")
        choice = self.prompter.choose(
            "Installed database version differs from the backup.",
            [
                (ConflictResolution.REPLACE.value, f"Uninstall {item.installed} and install {item.recorded}"),
                (ConflictResolution.ABORT.value, "Abort"),
            ],
        )
        for action in resolve_conflict(item, ConflictResolution(choice)):
            self._execute(action)

    def _reconcile_runtimes(self, reconciliation: ReconciliationPlan, manifest: Manifest) -> None:
        for item in reconciliation.runtimes_with(Decision.INSTALL):
            for action in item.actions:
                self._execute(action)
        for item in reconciliation.runtimes_with(Decision.NOOP):
            log_message(f"[RESTORE] PHP {item.subject}: already installed")

        for version in manifest.environment.runtime_versions:
            extensions = self.extension_lister.list_extensions(version)
            if not extensions:
                log_message(f"[RESTORE] PHP {version}: no extensions detected")
                continue

            log_message(f"[RESTORE] PHP {version} extensions detected: {', '.join(sorted(extensions))}")
            if not self.prompter.confirm(f"Install {len(extensions)} detected extensions for {version}?"):
                log_message(f"[RESTORE] PHP {version}: extension install skipped by operator")
                continue
            for action in plan_extensions(version, extensions, self.config.panel_cli):
                self._execute(action)

    def _extract(self, archive: str) -> None:
        manifest_name = self.config.manifest_name
        action = Action(ActionKind.EXTRACT_ARCHIVE, archive,
                        (self.config.restore_root, manifest_name, f"./{manifest_name}"))
        self._execute(action, PreconditionError)

    def _restart_services(self, manifest: Manifest) -> None:
        config = self.config
        services = [config.web_service, config.database_service]
        services += [fpm_service_name(config.fpm_service_template, v) for v in manifest.environment.runtime_versions]
        services.append(config.panel_service)

        for name in services:
            self._execute(Action(ActionKind.RESTART_SERVICE, name, ("systemctl", "restart", name), best_effort=True))

        self._execute(Action(ActionKind.RUN_COMMAND, "panel default info", (config.panel_cli, "default"),
                             best_effort=True))

    def _summarize(self) -> None:
        report = self.report
        log_message("=" * 60)
        if report.dry_run:
            log_message(f"[RESTORE] DRY-RUN complete: {len(report.actions)} actions planned, none executed")
        else:
            log_message(f"[RESTORE] ✓ Restore completed: {len(report.actions)} actions executed")
        if report.best_effort_failures:
            log_message(f"[RESTORE] {len(report.best_effort_failures)} best-effort steps failed:", "WARNING")
            for result in report.best_effort_failures:
                log_message(f"[RESTORE]   ✗ {result.action.describe()}: {result.detail}", "WARNING")
        if report.health is not None and not report.health.healthy:
            log_message("[RESTORE] Health check reported problems; see above", "WARNING")
        log_message("=" * 60)
