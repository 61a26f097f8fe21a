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
Transfer Negotiator

Fetches the newest archive and its digest sidecar from the old host over one
multiplexed ssh session. rsync (resumable, with progress) is preferred; when
it is missing on either end the operator decides between installing it,
falling back to scp, or aborting. Nothing is returned until the fetched pair
has been verified locally.
"""

import os
import shlex
import shutil
import subprocess
from enum import Enum
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from panelmigrate.utils.index import log_message
from panelmigrate.utils.errors import PreconditionError, TransportError
from panelmigrate.utils.checksummer import (
    VerificationResult,
    check_archive_contents,
    digest_path_for,
    raise_for_result,
    verify,
)
from panelmigrate.modules.archiver import select_latest

SSH_UNREACHABLE = 255
REMOTE_INSTALL_TEMPLATE = "apt-get update -y && apt-get install -y {tool}"


@dataclass
class RemoteResult:
    stdout: str
    exit_code: int
    stderr: str = ""


class RemoteExecutor:
    """Runs shell commands on the remote host."""

    def run(self, cmd: str) -> RemoteResult:
        raise NotImplementedError

    def connect(self) -> None:
        pass

    def close(self) -> None:
        pass

    def remote_spec(self, path: str) -> str:
        raise NotImplementedError

    def transport_options(self) -> List[str]:
        """Options a copy tool needs to ride on this executor's session."""
        return []

    def __enter__(self) -> 'RemoteExecutor':
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class SSHExecutor(RemoteExecutor):
    """RemoteExecutor over OpenSSH with connection multiplexing."""

    def __init__(self, user: str, host: str, control_path: str = "/tmp/ssh-%r@%h:%p",
                 control_persist: str = "10m"):
        self.user = user
        self.host = host
        self.control_path = control_path
        self.control_persist = control_persist

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"

    def transport_options(self) -> List[str]:
        return [
            "-o", "ControlMaster=auto",
            "-o", f"ControlPersist={self.control_persist}",
            "-o", f"ControlPath={self.control_path}",
        ]

    def remote_spec(self, path: str) -> str:
        return f"{self.destination}:{path}"

    def connect(self) -> None:
        log_message(f"Opening control connection to {self.destination}...")
        result = self.run("true")
        if result.exit_code != 0:
            raise TransportError("remote unreachable", f"{self.destination}: exit code {result.exit_code}")

    def run(self, cmd: str) -> RemoteResult:
        argv = ["ssh"] + self.transport_options() + [self.destination, cmd]
        log_message(f"Remote: {cmd}", "DEBUG")
        try:
            result = subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            raise PreconditionError("required local tool missing", f"ssh: {e}")

        if result.returncode == SSH_UNREACHABLE:
            raise TransportError("remote unreachable", f"{self.destination}: {result.stderr.strip()}")
        return RemoteResult(stdout=result.stdout, exit_code=result.returncode, stderr=result.stderr)

    def close(self) -> None:
        argv = ["ssh"] + self.transport_options() + ["-O", "exit", self.destination]
        try:
            subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            log_message(f"Failed to close control connection: {e}", "DEBUG")


class NegotiationOutcome(Enum):
    USE_PREFERRED = "use_preferred"
    OFFER_REMOTE_FALLBACK = "offer_remote_fallback"
    OFFER_LOCAL_FALLBACK = "offer_local_fallback"


class FallbackChoice(Enum):
    INSTALL_REMOTE = "install_remote"
    INSTALL_LOCAL = "install_local"
    PLAIN_COPY = "plain_copy"
    ABORT = "abort"


FALLBACK_OPTIONS = {
    NegotiationOutcome.USE_PREFERRED: (),
    NegotiationOutcome.OFFER_REMOTE_FALLBACK: (
        FallbackChoice.INSTALL_REMOTE,
        FallbackChoice.PLAIN_COPY,
        FallbackChoice.ABORT,
    ),
    NegotiationOutcome.OFFER_LOCAL_FALLBACK: (
        FallbackChoice.INSTALL_LOCAL,
        FallbackChoice.PLAIN_COPY,
    ),
}


def negotiate_transfer_tool(local_has_tool: bool, remote_has_tool: bool) -> NegotiationOutcome:
    """Decide how to transfer given where the preferred tool is installed."""
    if not local_has_tool:
        return NegotiationOutcome.OFFER_LOCAL_FALLBACK
    if not remote_has_tool:
        return NegotiationOutcome.OFFER_REMOTE_FALLBACK
    return NegotiationOutcome.USE_PREFERRED


def fallback_options(outcome: NegotiationOutcome) -> Tuple[FallbackChoice, ...]:
    return FALLBACK_OPTIONS[outcome]


class DigestStatus(Enum):
    VERIFIED = "verified"
    UNVERIFIABLE = "unverifiable"


@dataclass
class FetchResult:
    archive_path: str
    digest_path: Optional[str]
    digest_status: DigestStatus
    tool: str
    remote_path: str
    verification: Optional[VerificationResult] = None

    @property
    def verified(self) -> bool:
        return self.digest_status == DigestStatus.VERIFIED


def build_transfer_command(tool: str, executor: RemoteExecutor, remote_path: str, dest_dir: str) -> List[str]:
    """Command line that copies remote_path into dest_dir over the executor's session."""
    source = executor.remote_spec(remote_path)
    destination = dest_dir.rstrip("/") + "/"
    if tool == "rsync":
        return ["rsync", "-avz", "--partial", "--progress",
                "-e", shlex.join(["ssh"] + executor.transport_options()),
                source, destination]
    if tool == "scp":
        return ["scp"] + executor.transport_options() + [source, destination]
    raise ValueError(f"Unsupported transfer tool: {tool}")


class TransferNegotiator:
    """Finds, transfers and verifies the newest backup on a remote host."""

    def __init__(self, config, prompter,
                 executor_factory: Optional[Callable[[str, str], RemoteExecutor]] = None,
                 which: Callable[[str], Optional[str]] = shutil.which,
                 run_local: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.config = config
        self.prompter = prompter
        self.executor_factory = executor_factory or self._ssh_executor
        self.which = which
        self.run_local = run_local

    def _ssh_executor(self, user: str, host: str) -> RemoteExecutor:
        return SSHExecutor(user, host, self.config.ssh_control_path, self.config.ssh_control_persist)

    def find_remote_archive(self, executor: RemoteExecutor, remote_dir: str) -> str:
        """Return the remote path of the newest archive in remote_dir."""
        directory = remote_dir.rstrip("/") or "/"
        cmd = f"ls -1 {shlex.quote(directory)}/{shlex.quote(self.config.prefix)}_*.tar.gz 2>/dev/null"
        result = executor.run(cmd)
        latest = select_latest(result.stdout.splitlines(), self.config.prefix)
        if latest is None:
            raise TransportError("no backup found", f"no {self.config.prefix}_*.tar.gz in {remote_dir}")
        return latest

    def remote_has(self, executor: RemoteExecutor, tool: str) -> bool:
        return executor.run(f"command -v {shlex.quote(tool)} >/dev/null 2>&1").exit_code == 0

    def local_has(self, tool: str) -> bool:
        return self.which(tool) is not None

    def _ask(self, outcome: NegotiationOutcome) -> FallbackChoice:
        tool, fallback = self.config.transfer_tool, self.config.fallback_tool
        labels = {
            FallbackChoice.INSTALL_REMOTE: f"Install {tool} on remote server (recommended)",
            FallbackChoice.INSTALL_LOCAL: f"Install {tool} locally",
            FallbackChoice.PLAIN_COPY: f"Continue using {fallback} (no resume, no progress bar)",
            FallbackChoice.ABORT: "Abort",
        }
        where = "on remote server" if outcome == NegotiationOutcome.OFFER_REMOTE_FALLBACK else "locally"
        options = [(choice.value, labels[choice]) for choice in fallback_options(outcome)]
        return FallbackChoice(self.prompter.choose(f"{tool} is not installed {where}.", options))

    def _install_local(self, tool: str) -> None:
        steps = [
            list(self.config.package_update_command),
            list(self.config.package_install_command) + [tool],
        ]
        for argv in steps:
            log_message(f"Installing {tool} locally: {shlex.join(argv)}")
            try:
                result = self.run_local(argv)
            except OSError as e:
                raise PreconditionError("local tool install failed", f"{tool}: {e}")
            if result.returncode != 0:
                raise PreconditionError("local tool install failed", f"{shlex.join(argv)} exited with {result.returncode}")
        if not self.local_has(tool):
            raise PreconditionError("local tool install failed", tool)

    def _install_remote(self, executor: RemoteExecutor, tool: str) -> None:
        log_message(f"Installing {tool} on remote server...")
        result = executor.run(REMOTE_INSTALL_TEMPLATE.format(tool=shlex.quote(tool)))
        if result.exit_code != 0:
            raise TransportError("remote tool install failed", result.stderr.strip() or tool)

    def _plain_copy_tool(self) -> str:
        fallback = self.config.fallback_tool
        if not self.local_has(fallback):
            raise PreconditionError("required local tool missing", fallback)
        return fallback

    def choose_tool(self, executor: RemoteExecutor) -> str:
        """
        Pick the copy tool, asking the operator whenever rsync is missing.

        Never picks a fallback on the operator's behalf.
        """
        tool = self.config.transfer_tool

        log_message(f"Checking {tool} on local server...")
        local = self.local_has(tool)
        if not local:
            choice = self._ask(NegotiationOutcome.OFFER_LOCAL_FALLBACK)
            if choice == FallbackChoice.PLAIN_COPY:
                return self._plain_copy_tool()
            self._install_local(tool)
            local = True

        log_message(f"Checking {tool} on remote server...")
        outcome = negotiate_transfer_tool(local, self.remote_has(executor, tool))
        if outcome == NegotiationOutcome.USE_PREFERRED:
            return tool

        choice = self._ask(outcome)
        if choice == FallbackChoice.INSTALL_REMOTE:
            self._install_remote(executor, tool)
            return tool
        if choice == FallbackChoice.PLAIN_COPY:
            return self._plain_copy_tool()
        raise TransportError("transfer tool unavailable on remote", "operator chose to abort")

    def _copy(self, tool: str, executor: RemoteExecutor, remote_path: str, what: str) -> None:
        argv = build_transfer_command(tool, executor, remote_path, self.config.backup_dir)
        log_message(f"[DOWNLOAD] Downloading {what} using {tool}...")
        try:
            result = self.run_local(argv)
        except OSError as e:
            raise PreconditionError("required local tool missing", f"{tool}: {e}")
        if result.returncode != 0:
            raise TransportError(f"{what} download failed", f"{tool} exited with {result.returncode}")

    def fetch(self, remote_user: str, remote_host: str, remote_dir: str) -> FetchResult:
        """
        Download and verify the newest backup from remote_dir.

        Returns:
            FetchResult: digest_status VERIFIED when the sidecar was fetched and
            matched; UNVERIFIABLE when the remote had no sidecar (the archive is
            still checked structurally)

        Raises:
            TransportError, PreconditionError, IntegrityError
        """
        os.makedirs(self.config.backup_dir, exist_ok=True)

        with self.executor_factory(remote_user, remote_host) as executor:
            log_message("[DOWNLOAD] Searching for latest backup on remote server...")
            remote_archive = self.find_remote_archive(executor, remote_dir)
            log_message(f"[DOWNLOAD] Found backup: {remote_archive}")

            tool = self.choose_tool(executor)
            self._copy(tool, executor, remote_archive, "backup")

            remote_digest = digest_path_for(remote_archive)
            has_digest = executor.run(f"test -f {shlex.quote(remote_digest)}").exit_code == 0
            if has_digest:
                self._copy(tool, executor, remote_digest, "checksum")

        local_archive = os.path.join(self.config.backup_dir, os.path.basename(remote_archive))

        if not has_digest:
            log_message("[DOWNLOAD] UNVERIFIABLE: remote digest sidecar missing; "
                        "archive is unverified and used at the operator's risk", "WARNING")
            result = check_archive_contents(local_archive, self.config.required_prefixes)
            raise_for_result(result)
            return FetchResult(local_archive, None, DigestStatus.UNVERIFIABLE, tool, remote_archive, result)

        log_message("[DOWNLOAD] Verifying checksum locally...")
        local_digest = digest_path_for(local_archive)
        result = verify(local_archive, self.config.required_prefixes, local_digest, produced_locally=False)
        raise_for_result(result)
        log_message(f"[DOWNLOAD] ✓ Backup downloaded and verified from {remote_host}")
        return FetchResult(local_archive, local_digest, DigestStatus.VERIFIED, tool, remote_archive, result)
