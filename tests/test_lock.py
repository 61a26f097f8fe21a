import fcntl
import json
import os
import signal
import time

import pytest

from panelmigrate.utils.errors import LockError
from panelmigrate.utils import lock as lock_module
from panelmigrate.utils.lock import LOCK_FILE_NAME, MigrationLock


def test_lock_records_holder_and_releases(tmp_path):
    with MigrationLock(str(tmp_path), "backup") as lock:
        assert lock.held
        holder = json.loads((tmp_path / LOCK_FILE_NAME).read_text())
        assert holder["operation"] == "backup"
        assert "pid" in holder

    assert not lock.held
    assert not (tmp_path / LOCK_FILE_NAME).exists()


def test_second_holder_is_refused(tmp_path):
    with MigrationLock(str(tmp_path), "restore"):
        with pytest.raises(LockError) as excinfo:
            MigrationLock(str(tmp_path), "verify").acquire()

    assert excinfo.value.check == "backup directory busy"
    assert "restore" in excinfo.value.detail
    assert excinfo.value.exit_code == 2


def test_lock_released_on_error(tmp_path):
    with pytest.raises(RuntimeError):
        with MigrationLock(str(tmp_path), "download"):
            raise RuntimeError("boom")

    with MigrationLock(str(tmp_path), "download") as lock:
        assert lock.held


def test_signal_handlers_restored(tmp_path):
    before = signal.getsignal(signal.SIGTERM)
    with MigrationLock(str(tmp_path), "backup"):
        assert signal.getsignal(signal.SIGTERM) is not before
    assert signal.getsignal(signal.SIGTERM) is before


def test_lock_creates_backup_dir(tmp_path):
    target = tmp_path / "new" / "backups"
    with MigrationLock(str(target), "backup"):
        assert target.is_dir()


def test_sigterm_while_held_releases_lock(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        with MigrationLock(str(tmp_path), "restore"):
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(1)

    assert excinfo.value.code == 128 + signal.SIGTERM
    assert not (tmp_path / LOCK_FILE_NAME).exists()
    with MigrationLock(str(tmp_path), "restore") as lock:
        assert lock.held


def test_lock_file_replaced_during_acquire_is_relocked(tmp_path, monkeypatch):
    lock_path = tmp_path / LOCK_FILE_NAME
    real_flock = lock_module.fcntl.flock
    replaced = []

    def flock(fd, operation):
        if operation & fcntl.LOCK_EX and not replaced:
            # A releasing holder unlinks the file and a newcomer recreates it
            lock_path.unlink()
            lock_path.write_text("")
            replaced.append(fd)
        return real_flock(fd, operation)

    monkeypatch.setattr(lock_module.fcntl, "flock", flock)

    with MigrationLock(str(tmp_path), "backup") as lock:
        assert replaced
        assert os.fstat(lock._fd).st_ino == os.stat(lock_path).st_ino
        with pytest.raises(LockError):
            MigrationLock(str(tmp_path), "verify").acquire()
