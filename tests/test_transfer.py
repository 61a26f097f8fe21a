import os
import subprocess
from dataclasses import replace
from datetime import datetime
from unittest.mock import Mock

import pytest

from panelmigrate.modules.archiver import build_manifest, create_archive
from panelmigrate.modules.transfer import index as transfer
from panelmigrate.modules.transfer import (
    DigestStatus,
    FallbackChoice,
    NegotiationOutcome,
    RemoteResult,
    SSHExecutor,
    TransferNegotiator,
    build_transfer_command,
    fallback_options,
    negotiate_transfer_tool,
)
from panelmigrate.utils.checksummer import format_digest_line, seal
from panelmigrate.utils.errors import IntegrityError, PreconditionError, TransportError

from tests.utils import FakeExecutor, ScriptedPrompter, copy_remote, snapshot_of


@pytest.mark.parametrize("local, remote, outcome", [
    (True, True, NegotiationOutcome.USE_PREFERRED),
    (True, False, NegotiationOutcome.OFFER_REMOTE_FALLBACK),
    (False, True, NegotiationOutcome.OFFER_LOCAL_FALLBACK),
    (False, False, NegotiationOutcome.OFFER_LOCAL_FALLBACK),
])
def test_negotiate_transfer_tool(local, remote, outcome):
    assert negotiate_transfer_tool(local, remote) == outcome


def test_fallback_options():
    assert fallback_options(NegotiationOutcome.USE_PREFERRED) == ()
    assert fallback_options(NegotiationOutcome.OFFER_REMOTE_FALLBACK) == (
        FallbackChoice.INSTALL_REMOTE, FallbackChoice.PLAIN_COPY, FallbackChoice.ABORT)
    assert fallback_options(NegotiationOutcome.OFFER_LOCAL_FALLBACK) == (
        FallbackChoice.INSTALL_LOCAL, FallbackChoice.PLAIN_COPY)


def test_build_transfer_command_rsync():
    executor = SSHExecutor("root", "old-host", "/tmp/cm-%r@%h:%p", "5m")
    argv = build_transfer_command("rsync", executor, "/root/aapanel_backup/a.tar.gz", "/root/aapanel_backup")

    assert argv[:5] == ["rsync", "-avz", "--partial", "--progress", "-e"]
    assert "ControlMaster=auto" in argv[5]
    assert "ControlPersist=5m" in argv[5]
    assert argv[-2:] == ["root@old-host:/root/aapanel_backup/a.tar.gz", "/root/aapanel_backup/"]


def test_build_transfer_command_scp():
    executor = SSHExecutor("root", "old-host")
    argv = build_transfer_command("scp", executor, "/b/a.tar.gz", "/local/")

    assert argv[0] == "scp"
    assert "ControlMaster=auto" in argv
    assert argv[-2:] == ["root@old-host:/b/a.tar.gz", "/local/"]


def test_build_transfer_command_unknown_tool():
    with pytest.raises(ValueError):
        build_transfer_command("ftp", FakeExecutor(), "/a", "/b")


def test_ssh_executor_unreachable(monkeypatch):
    monkeypatch.setattr(transfer.subprocess, "run", Mock(
        return_value=subprocess.CompletedProcess([], 255, stdout="", stderr="Connection refused")))

    with pytest.raises(TransportError) as excinfo:
        SSHExecutor("root", "old-host").connect()
    assert excinfo.value.check == "remote unreachable"
    assert excinfo.value.exit_code == 5


def test_ssh_executor_runs_over_control_master(monkeypatch):
    run = Mock(return_value=subprocess.CompletedProcess([], 0, stdout="ok\n", stderr=""))
    monkeypatch.setattr(transfer.subprocess, "run", run)

    result = SSHExecutor("root", "old-host").run("ls /root")
    argv = run.call_args[0][0]
    assert argv[0] == "ssh"
    assert "ControlMaster=auto" in argv
    assert argv[-2:] == ["root@old-host", "ls /root"]
    assert result.stdout == "ok\n"
    assert result.exit_code == 0


@pytest.fixture
def remote_dir(tmp_path, config):
    """A populated backup directory standing in for the old host."""
    remote = tmp_path / "remote"
    remote.mkdir()
    remote_config = replace(config, backup_dir=str(remote))
    manifest = build_manifest(remote_config, snapshot_of(("php74", "php81")))
    create_archive(remote_config, manifest, now=datetime(2026, 10, 1, 9, 0, 0))
    newest = create_archive(remote_config, manifest, now=datetime(2026, 10, 18, 10, 0, 0))
    seal(newest.path)
    return remote


def _listing(remote):
    names = sorted(str(p) for p in remote.glob("aapanel_*.tar.gz"))
    return RemoteResult(stdout="\n".join(names) + "\n", exit_code=0)


def _negotiator(config, prompter, executor, which=None, run_local=copy_remote):
    return TransferNegotiator(
        config, prompter,
        executor_factory=lambda user, host: executor,
        which=which or (lambda tool: f"/usr/bin/{tool}"),
        run_local=run_local,
    )


def test_fetch_downloads_and_verifies_newest(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir)})
    result = _negotiator(config, ScriptedPrompter(), executor).fetch("root", "old-host", str(remote_dir))

    assert result.verified
    assert result.digest_status == DigestStatus.VERIFIED
    assert result.tool == "rsync"
    assert os.path.basename(result.archive_path) == "aapanel_20261018-100000.tar.gz"
    assert os.path.exists(result.digest_path)
    assert executor.connected and executor.closed


def test_fetch_without_remote_digest_is_unverifiable(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir), "test -f": RemoteResult("", 1)})
    copies = []

    def run_local(argv, **kwargs):
        copies.append(argv)
        return copy_remote(argv)

    result = _negotiator(config, ScriptedPrompter(), executor, run_local=run_local).fetch(
        "root", "old-host", str(remote_dir))

    assert result.digest_status == DigestStatus.UNVERIFIABLE
    assert not result.verified
    assert result.digest_path is None
    assert len(copies) == 1


def test_fetch_with_corrupt_remote_digest_fails(config, remote_dir):
    newest = remote_dir / "aapanel_20261018-100000.tar.gz"
    (remote_dir / "aapanel_20261018-100000.tar.gz.sha256").write_text(format_digest_line("0" * 64, newest.name))
    executor = FakeExecutor({"ls -1": _listing(remote_dir)})

    with pytest.raises(IntegrityError):
        _negotiator(config, ScriptedPrompter(), executor).fetch("root", "old-host", str(remote_dir))


def test_fetch_without_remote_backup(config):
    executor = FakeExecutor({"ls -1": RemoteResult("", 2)})

    with pytest.raises(TransportError) as excinfo:
        _negotiator(config, ScriptedPrompter(), executor).fetch("root", "old-host", "/root/aapanel_backup")
    assert excinfo.value.check == "no backup found"
    assert executor.closed


def test_missing_remote_rsync_offers_three_options_before_any_transfer(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir), "command -v": RemoteResult("", 1)})
    prompter = ScriptedPrompter(choices=["abort"])
    run_local = Mock(side_effect=copy_remote)

    with pytest.raises(TransportError) as excinfo:
        _negotiator(config, prompter, executor, run_local=run_local).fetch("root", "old-host", str(remote_dir))

    assert prompter.offered == [["install_remote", "plain_copy", "abort"]]
    assert excinfo.value.check == "transfer tool unavailable on remote"
    run_local.assert_not_called()


def test_plain_copy_fallback_uses_scp(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir), "command -v": RemoteResult("", 1)})
    prompter = ScriptedPrompter(choices=["plain_copy"])
    run_local = Mock(side_effect=copy_remote)

    result = _negotiator(config, prompter, executor, run_local=run_local).fetch("root", "old-host", str(remote_dir))

    assert result.tool == "scp"
    assert result.verified
    assert all(call[0][0][0] == "scp" for call in run_local.call_args_list)


def test_install_remote_fallback(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir), "command -v": RemoteResult("", 1)})
    prompter = ScriptedPrompter(choices=["install_remote"])

    result = _negotiator(config, prompter, executor).fetch("root", "old-host", str(remote_dir))

    assert result.tool == "rsync"
    assert "apt-get update -y && apt-get install -y rsync" in executor.commands


def test_missing_local_rsync_offers_two_options(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir)})
    prompter = ScriptedPrompter(choices=["plain_copy"])
    which = lambda tool: None if tool == "rsync" else f"/usr/bin/{tool}"

    result = _negotiator(config, prompter, executor, which=which).fetch("root", "old-host", str(remote_dir))

    assert prompter.offered == [["install_local", "plain_copy"]]
    assert result.tool == "scp"
    assert not any(cmd.startswith("command -v") for cmd in executor.commands)


def test_plain_copy_without_local_scp(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir), "command -v": RemoteResult("", 1)})
    prompter = ScriptedPrompter(choices=["plain_copy"])
    which = lambda tool: "/usr/bin/rsync" if tool == "rsync" else None

    with pytest.raises(PreconditionError):
        _negotiator(config, prompter, executor, which=which).fetch("root", "old-host", str(remote_dir))


def test_failed_copy_is_transport_error(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir)})
    run_local = Mock(return_value=subprocess.CompletedProcess([], 12))

    with pytest.raises(TransportError) as excinfo:
        _negotiator(config, ScriptedPrompter(), executor, run_local=run_local).fetch(
            "root", "old-host", str(remote_dir))
    assert excinfo.value.check == "backup download failed"


def test_install_local_refreshes_package_index_first(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir)})
    prompter = ScriptedPrompter(choices=["install_local"])
    installed = set()
    commands = []

    def run_local(argv, **kwargs):
        commands.append(argv)
        if argv[:2] == ["apt-get", "install"]:
            installed.add(argv[-1])
            return subprocess.CompletedProcess(argv, 0)
        if argv[0] == "apt-get":
            return subprocess.CompletedProcess(argv, 0)
        return copy_remote(argv)

    which = lambda tool: f"/usr/bin/{tool}" if tool != "rsync" or "rsync" in installed else None

    result = _negotiator(config, prompter, executor, which=which, run_local=run_local).fetch(
        "root", "old-host", str(remote_dir))

    assert commands[:2] == [["apt-get", "update", "-y"], ["apt-get", "install", "-y", "rsync"]]
    assert result.tool == "rsync"
    assert result.verified


def test_install_local_stops_when_index_refresh_fails(config, remote_dir):
    executor = FakeExecutor({"ls -1": _listing(remote_dir)})
    prompter = ScriptedPrompter(choices=["install_local"])
    commands = []

    def run_local(argv, **kwargs):
        commands.append(argv)
        return subprocess.CompletedProcess(argv, 100)

    with pytest.raises(PreconditionError) as excinfo:
        _negotiator(config, prompter, executor, which=lambda tool: None, run_local=run_local).fetch(
            "root", "old-host", str(remote_dir))

    assert excinfo.value.check == "local tool install failed"
    assert commands == [["apt-get", "update", "-y"]]
