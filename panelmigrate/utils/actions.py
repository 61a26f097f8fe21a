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
Mutating actions and their two interpreters.

The reconciler and the restore orchestrator describe every change they want
as an Action. CommandRunner carries actions out; DryRunRunner only logs what
would have run. Both consume the same sequence, so a dry run audits exactly
the set of actions a real run would consider.
"""

import shlex
import tarfile
import subprocess
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Tuple

from .index import log_message


class ActionKind(Enum):
    INSTALL_PACKAGE = "install_package"
    UNINSTALL_PACKAGE = "uninstall_package"
    INSTALL_TOOL = "install_tool"
    EXTRACT_ARCHIVE = "extract_archive"
    RESTART_SERVICE = "restart_service"
    RUN_COMMAND = "run_command"


@dataclass(frozen=True)
class Action:
    """
    One mutating step.

    For EXTRACT_ARCHIVE, target is the archive path and argv holds the
    destination root followed by member names to leave out. For every other
    kind argv is the command line to execute.
    """
    kind: ActionKind
    target: str
    argv: Tuple[str, ...] = ()
    best_effort: bool = False

    def describe(self) -> str:
        if self.kind == ActionKind.EXTRACT_ARCHIVE:
            destination = self.argv[0] if self.argv else "/"
            return f"extract {self.target} over {destination}"
        return f"{self.kind.value.replace('_', ' ')} {self.target}: {shlex.join(self.argv)}"


@dataclass
class ActionResult:
    action: Action
    success: bool
    executed: bool
    detail: str = ""


def restore_filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    """
    Extraction filter for a verified full-system archive.

    Members that would land outside dest_path are refused. Every recorded mode
    bit is kept, including setuid, setgid, sticky and group/other write.
    """
    checked = tarfile.tar_filter(member, dest_path)
    return checked.replace(mode=member.mode, deep=False)


class CommandRunner:
    """Executes actions."""

    dry_run = False

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout

    def run(self, action: Action) -> ActionResult:
        log_message(f"Running: {action.describe()}")
        try:
            if action.kind == ActionKind.EXTRACT_ARCHIVE:
                return self._extract(action)
            return self._execute(action)
        except (OSError, tarfile.TarError, subprocess.SubprocessError) as e:
            log_message(f"Action failed: {action.describe()}: {e}", "ERROR")
            return ActionResult(action, success=False, executed=True, detail=str(e))

    def _execute(self, action: Action) -> ActionResult:
        result = subprocess.run(list(action.argv), capture_output=True, text=True, timeout=self.timeout)
        if result.stdout.strip():
            log_message(f"Output: {result.stdout.strip()}", "DEBUG")
        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            log_message(f"Command failed: {shlex.join(action.argv)}: {detail}", "ERROR")
            return ActionResult(action, success=False, executed=True, detail=detail)
        return ActionResult(action, success=True, executed=True)

    def _extract(self, action: Action) -> ActionResult:
        destination = action.argv[0] if action.argv else "/"
        excluded = set(action.argv[1:])

        with tarfile.open(action.target, "r:gz") as tar:
            members = [m for m in tar.getmembers() if m.name not in excluded]
            if hasattr(tarfile, "tar_filter"):
                tar.extractall(destination, members=members, filter=restore_filter)
            else:
                tar.extractall(destination, members=members)

        log_message(f"Extracted {len(members)} entries over {destination}")
        return ActionResult(action, success=True, executed=True, detail=f"{len(members)} entries")


class DryRunRunner:
    """Logs actions instead of executing them."""

    dry_run = True

    def run(self, action: Action) -> ActionResult:
        log_message(f"[DRY-RUN] {action.describe()}")
        return ActionResult(action, success=True, executed=False, detail="dry-run")


def make_runner(config):
    """Pick the interpreter for this run's config."""
    if config.dry_run:
        return DryRunRunner()
    return CommandRunner()
