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
Advisory lock on the backup directory.

Only one backup/restore/download/verify may run against a backup directory at
a time. The lock is an fcntl.flock on a file inside the directory, held for
the whole run and released on every exit path, including SIGTERM and SIGHUP.
"""

import os
import sys
import json
import time
import fcntl
import signal
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from .index import log_message
from .errors import LockError, PreconditionError

LOCK_FILE_NAME = ".panel-migrate.lock"
HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def _exit_on_signal(signum, frame):
    raise SystemExit(128 + signum)


class MigrationLock:
    """Exclusive, non-blocking lock on a backup directory."""

    def __init__(self, backup_dir: str, operation: str = "migration"):
        self.backup_dir = Path(backup_dir)
        self.lock_path = self.backup_dir / LOCK_FILE_NAME
        self.operation = operation
        self._fd: Optional[int] = None
        self._previous_handlers: Dict[int, Any] = {}

    def _read_holder(self) -> str:
        try:
            with open(self.lock_path, 'r') as f:
                holder = json.load(f)
            return f"{holder.get('operation', '?')} (pid {holder.get('pid', '?')} on {holder.get('hostname', '?')})"
        except (OSError, ValueError):
            return "unknown holder"

    def _is_current(self, fd: int) -> bool:
        """True while fd still refers to the file at lock_path."""
        try:
            return os.fstat(fd).st_ino == os.stat(self.lock_path).st_ino
        except FileNotFoundError:
            return False

    def _open_locked(self) -> int:
        while True:
            try:
                self.backup_dir.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
            except OSError as e:
                raise PreconditionError("backup directory not usable", f"{self.backup_dir}: {e}")

            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                raise LockError("backup directory busy",
                                f"{self.backup_dir} is locked by {self._read_holder()}")

            if self._is_current(fd):
                return fd
            # The previous holder unlinked the file between our open and flock
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def acquire(self) -> None:
        fd = self._open_locked()

        holder = {
            "operation": self.operation,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "command": " ".join(sys.argv),
            "started": time.strftime("%Y-%m-%dT%H:%M:%S"),
        }
        os.ftruncate(fd, 0)
        os.write(fd, json.dumps(holder).encode())
        self._fd = fd

        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, _exit_on_signal)

        log_message(f"Acquired lock {self.lock_path} for {self.operation}", "DEBUG")

    def release(self) -> None:
        if self._fd is None:
            return

        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

        # Unlink while still locked; a waiter holding the old inode sees it is stale
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        finally:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None

        log_message(f"Released lock {self.lock_path}", "DEBUG")

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> 'MigrationLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
