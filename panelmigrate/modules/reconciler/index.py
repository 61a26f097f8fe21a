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
Reconciler

Compares the environment recorded in a manifest with what is installed on
this host and produces a ReconciliationPlan. Planning is pure: nothing here
touches the system. A database version conflict is never resolved
automatically; the plan only says a decision is required.
"""

from enum import Enum
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

from panelmigrate.utils.index import log_message
from panelmigrate.utils.actions import Action, ActionKind
from panelmigrate.utils.errors import EnvironmentConflictError
from panelmigrate.modules.inspector import EnvironmentSnapshot, DB_VERSION_NONE


class Decision(Enum):
    NOOP = "no-op"
    INSTALL = "install-missing"
    REQUIRE_DECISION = "version-conflict-require-decision"
    ABORT = "abort"


class ConflictResolution(Enum):
    REPLACE = "replace"
    ABORT = "abort"


@dataclass(frozen=True)
class PlanItem:
    """
    One reconciliation decision.

    For REQUIRE_DECISION items, actions are what a REPLACE resolution would
    run; they are never executed without an explicit resolution.
    """
    dimension: str
    subject: str
    decision: Decision
    installed: str
    recorded: str
    actions: Tuple[Action, ...] = ()
    note: str = ""

    def describe(self) -> str:
        text = f"{self.dimension} {self.subject}: {self.decision.value} (installed {self.installed}, recorded {self.recorded})"
        return f"{text} - {self.note}" if self.note else text


@dataclass(frozen=True)
class ReconciliationPlan:
    database: PlanItem
    runtimes: Tuple[PlanItem, ...]

    @property
    def items(self) -> Tuple[PlanItem, ...]:
        return (self.database,) + self.runtimes

    @property
    def requires_decision(self) -> bool:
        return any(item.decision == Decision.REQUIRE_DECISION for item in self.items)

    @property
    def aborted(self) -> bool:
        return any(item.decision == Decision.ABORT for item in self.items)

    def runtimes_with(self, decision: Decision) -> List[PlanItem]:
        return [item for item in self.runtimes if item.decision == decision]


def database_package(engine: str, version: str) -> Optional[str]:
    """Panel package for a database version, e.g. ('mysql', '5.7.40') -> 'mysql57'."""
    try:
        parsed = Version(version)
    except InvalidVersion:
        return None
    return f"{engine}{parsed.major}{parsed.minor}"


def describe_version_gap(installed: str, recorded: str) -> str:
    try:
        installed_version, recorded_version = Version(installed), Version(recorded)
    except InvalidVersion:
        return "versions are not comparable"

    if installed_version.release[:2] == recorded_version.release[:2]:
        return f"patch-level difference ({installed} vs {recorded})"
    direction = "newer" if installed_version > recorded_version else "older"
    return f"installed {installed} is a {direction} release line than recorded {recorded}"


def _plan_database(recorded: EnvironmentSnapshot, installed: EnvironmentSnapshot, panel_cli: str) -> PlanItem:
    engine = recorded.database_engine
    recorded_version = recorded.database_version
    installed_version = installed.database_version
    installed_label = f"{installed.database_engine} {installed_version}"
    recorded_label = f"{engine} {recorded_version}"

    if recorded_version == DB_VERSION_NONE:
        return PlanItem("database", engine, Decision.NOOP, installed_label, recorded_label,
                        note="source host recorded no database")

    package = database_package(engine, recorded_version)

    if not installed.has_database:
        if package is None:
            return PlanItem("database", engine, Decision.ABORT, installed_label, recorded_label,
                            note=f"cannot derive an install package for {recorded_version}")
        install = Action(ActionKind.INSTALL_PACKAGE, package, (panel_cli, "install", package))
        return PlanItem("database", engine, Decision.INSTALL, installed_label, recorded_label, (install,))

    if installed.database_engine == engine and installed_version == recorded_version:
        return PlanItem("database", engine, Decision.NOOP, installed_label, recorded_label)

    if package is None:
        return PlanItem("database", engine, Decision.ABORT, installed_label, recorded_label,
                        note=f"installed {installed_label} differs and {recorded_version} cannot be installed")

    if installed.database_engine != engine:
        note = f"engine differs ({installed.database_engine} installed, {engine} recorded)"
    else:
        note = describe_version_gap(installed_version, recorded_version)

    replacement = (
        Action(ActionKind.UNINSTALL_PACKAGE, installed.database_engine,
               (panel_cli, "uninstall", installed.database_engine)),
        Action(ActionKind.INSTALL_PACKAGE, package, (panel_cli, "install", package)),
    )
    return PlanItem("database", engine, Decision.REQUIRE_DECISION, installed_label, recorded_label,
                    replacement, note)


def _plan_runtimes(recorded: EnvironmentSnapshot, installed: EnvironmentSnapshot, panel_cli: str) -> Tuple[PlanItem, ...]:
    present = set(installed.runtime_versions)
    items = []
    for version in recorded.runtime_versions:
        if version in present:
            items.append(PlanItem("runtime", version, Decision.NOOP, "installed", "recorded"))
        else:
            install = Action(ActionKind.INSTALL_PACKAGE, version, (panel_cli, "install", version))
            items.append(PlanItem("runtime", version, Decision.INSTALL, "missing", "recorded", (install,)))
    return tuple(items)


def plan(manifest, installed: EnvironmentSnapshot, panel_cli: str = "bt") -> ReconciliationPlan:
    """
    Compare a manifest's recorded environment with the installed one.

    Args:
        manifest: Manifest of the archive being restored
        installed: Snapshot of this host, from the inspector
        panel_cli: Panel command used to install and remove software

    Returns:
        ReconciliationPlan: One item for the database, one per recorded runtime
    """
    recorded = manifest.environment
    result = ReconciliationPlan(
        database=_plan_database(recorded, installed, panel_cli),
        runtimes=_plan_runtimes(recorded, installed, panel_cli),
    )
    for item in result.items:
        log_message(f"[PLAN] {item.describe()}")
    return result


def resolve_conflict(item: PlanItem, resolution: ConflictResolution) -> Tuple[Action, ...]:
    """Actions for an operator-resolved database conflict; ABORT raises."""
    if item.decision != Decision.REQUIRE_DECISION:
        raise ValueError(f"{item.subject} does not need a decision")
    if resolution == ConflictResolution.REPLACE:
        return item.actions
    raise EnvironmentConflictError("database version conflict",
                                   f"installed {item.installed}, recorded {item.recorded}")


def plan_extensions(version: str, extensions: Iterable[str], panel_cli: str = "bt") -> Tuple[Action, ...]:
    """Best-effort install actions for a runtime's detected extensions."""
    return tuple(
        Action(ActionKind.INSTALL_PACKAGE, f"{version}-{ext}", (panel_cli, "install", f"{version}-{ext}"),
               best_effort=True)
        for ext in sorted(extensions)
    )
