"""Fakes and builders shared by the test modules."""

import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Set

from panelmigrate.utils.config import MigrationConfig
from panelmigrate.utils.actions import ActionResult
from panelmigrate.utils.prompt import Prompter
from panelmigrate.modules.inspector import EnvironmentSnapshot, ExtensionLister
from panelmigrate.modules.transfer import RemoteExecutor, RemoteResult

DEFAULT_ROOTS = MigrationConfig().roots


def rel(path) -> str:
    return str(path).lstrip("/")


def build_host(root: Path, runtimes=("php74", "php81")) -> Path:
    """Create a small panel-managed filesystem under root."""
    files = {
        "www/wwwroot/example.com/index.php": "<?php echo 'hello';",
        "www/server/data/mysql/ibdata1": "innodb-bytes",
        "www/server/panel/data/port.pl": "8888",
        "www/server/panel/vhost/nginx/example.com.conf": "server { listen 80; }",
        "www/server/nginx/conf/nginx.conf": "worker_processes auto;",
        "etc/crontab": "0 3 * * * root /usr/bin/backup\n",
    }
    for runtime in runtimes:
        files[f"www/server/php/{runtime}/bin/php"] = "#!/bin/sh\n"
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


def make_config(tmp_path: Path, host_root: Path, **overrides) -> MigrationConfig:
    backup_dir = tmp_path / "backup"
    backup_dir.mkdir(exist_ok=True)
    dest = tmp_path / "dest"
    dest.mkdir(exist_ok=True)
    os_release = tmp_path / "os-release"
    os_release.write_text('NAME="Ubuntu"\nVERSION_ID="22.04"\n')

    values = dict(
        backup_dir=str(backup_dir),
        app_version="1.2.0",
        roots=tuple(str(host_root / r.lstrip("/")) for r in DEFAULT_ROOTS),
        required_prefixes=tuple(rel(host_root / p) for p in ("www/wwwroot", "www/server/panel", "www/server/data")),
        runtime_dir=str(host_root / "www/server/php"),
        os_release_path=str(os_release),
        restore_root=str(dest),
    )
    values.update(overrides)
    return MigrationConfig(**values)


class ScriptedPrompter(Prompter):
    """Answers from a script and records every question asked."""

    def __init__(self, confirm: bool = True, choices: Optional[List[str]] = None,
                 confirms: Optional[List[bool]] = None):
        self.default_confirm = confirm
        self.confirms = list(confirms or [])
        self.choices = list(choices or [])
        self.questions: List[str] = []
        self.offered: List[List[str]] = []

    def confirm(self, question):
        self.questions.append(question)
        if self.confirms:
            return self.confirms.pop(0)
        return self.default_confirm

    def choose(self, question, options):
        self.questions.append(question)
        keys = [key for key, _ in options]
        self.offered.append(keys)
        if not self.choices:
            raise AssertionError(f"unexpected choice asked: {question}")
        choice = self.choices.pop(0)
        assert choice in keys
        return choice


class FakeExecutor(RemoteExecutor):
    """RemoteExecutor answering from a table of command prefixes."""

    def __init__(self, responses: Optional[Dict[str, RemoteResult]] = None, default_exit: int = 0):
        self.responses = responses or {}
        self.default_exit = default_exit
        self.commands: List[str] = []
        self.connected = False
        self.closed = False

    def connect(self):
        self.connected = True

    def close(self):
        self.closed = True

    def remote_spec(self, path):
        return f"root@old-host:{path}"

    def run(self, cmd):
        self.commands.append(cmd)
        for prefix, result in self.responses.items():
            if cmd.startswith(prefix):
                return result
        return RemoteResult(stdout="", exit_code=self.default_exit)


class FakeExtensionLister(ExtensionLister):
    def __init__(self, extensions: Optional[Dict[str, Set[str]]] = None):
        self.extensions = extensions or {}
        self.asked: List[str] = []

    def list_extensions(self, version):
        self.asked.append(version)
        return set(self.extensions.get(version, set()))


class RecordingRunner:
    """Pretends to execute actions; fails the targets it is told to."""

    dry_run = False

    def __init__(self, fail_targets=()):
        self.fail_targets = set(fail_targets)
        self.actions = []

    def run(self, action):
        self.actions.append(action)
        if action.target in self.fail_targets:
            return ActionResult(action, success=False, executed=True, detail="simulated failure")
        return ActionResult(action, success=True, executed=True)


def snapshot_of(versions=("php81",), db_engine="mysql", db_version="5.7.40", os_name="Ubuntu 22.04"):
    return EnvironmentSnapshot(
        os=os_name,
        database_engine=db_engine,
        database_version=db_version,
        runtime_versions=tuple(versions),
        captured_at="2026-10-18T10:00:00+00:00",
    )


def tree_listing(root: Path):
    """Relative paths and contents of everything under root."""
    listing = {}
    for path in sorted(Path(root).rglob("*")):
        key = str(path.relative_to(root))
        listing[key] = path.read_bytes() if path.is_file() else None
    return listing


def copy_remote(argv, **kwargs):
    """Stand-in for rsync/scp: copies the local path behind `user@host:path`."""
    source = argv[-2].split(":", 1)[1]
    destination = argv[-1]
    if not Path(source).exists():
        return subprocess.CompletedProcess(argv, 23)
    shutil.copy2(source, destination)
    return subprocess.CompletedProcess(argv, 0)
