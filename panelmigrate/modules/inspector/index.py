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
Environment Inspector

Read-only inspection of the local host: OS identity, database engine and
version, and the installed PHP runtime directories. Unknown values degrade to
sentinels so a manifest can always be written.
"""

import os
import re
import shutil
import subprocess
from datetime import datetime
from dataclasses import dataclass, asdict
from typing import Any, Dict, Set, Tuple

from panelmigrate.utils.index import log_message

UNKNOWN_OS = "unknown"
DB_ENGINE_NONE = "none"
DB_VERSION_NONE = "NONE"
RUNTIME_DIR_PATTERN = re.compile(r'^php(\d+)$')
DISTRIB_PATTERN = re.compile(r'Distrib\s+(\d+\.\d+\.\d+[^\s,]*)')
VER_PATTERN = re.compile(r'Ver\s+(\d+\.\d+\.\d+[^\s,]*)')
FROM_PATTERN = re.compile(r'from\s+(\d+\.\d+\.\d+[^\s,]*)')
PHP_QUERY_TIMEOUT = 30


@dataclass(frozen=True)
class EnvironmentSnapshot:
    """What a host was running when it was inspected."""
    os: str
    database_engine: str
    database_version: str
    runtime_versions: Tuple[str, ...]
    captured_at: str

    @property
    def has_database(self) -> bool:
        return self.database_version != DB_VERSION_NONE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["runtime_versions"] = list(self.runtime_versions)
        return data


def now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def detect_os(os_release_path: str = "/etc/os-release") -> str:
    """Return `NAME VERSION_ID` from os-release, or 'unknown'."""
    try:
        with open(os_release_path, 'r') as f:
            content = f.read()
    except OSError as e:
        log_message(f"Cannot read {os_release_path}: {e}", "WARNING")
        return UNKNOWN_OS

    values = {}
    for line in content.splitlines():
        if '=' not in line or line.lstrip().startswith('#'):
            continue
        key, _, value = line.partition('=')
        values[key.strip()] = value.strip().strip('"').strip("'")

    name = values.get("NAME", "")
    version_id = values.get("VERSION_ID", "")
    identity = f"{name} {version_id}".strip()
    return identity or UNKNOWN_OS


def parse_mysql_version_output(output: str) -> Tuple[str, str]:
    """
    Parse `mysql -V` output into (engine, version).

    Handles both the 5.x `Ver 14.14 Distrib 5.7.40,` form and the 8.x
    `Ver 8.0.30 for Linux` form.
    """
    if not output.strip():
        return DB_ENGINE_NONE, DB_VERSION_NONE

    engine = "mariadb" if "mariadb" in output.lower() else "mysql"

    match = (DISTRIB_PATTERN.search(output) or FROM_PATTERN.search(output)
             or VER_PATTERN.search(output))
    if not match:
        log_message(f"Unrecognized database client version output: {output.strip()}", "WARNING")
        return engine, DB_VERSION_NONE

    version = match.group(1)
    # MariaDB reports e.g. 10.6.12-MariaDB
    version = version.split("-")[0]
    return engine, version


def detect_database(client: str = "mysql") -> Tuple[str, str]:
    """Query the local database client; an absent client is not an error."""
    if shutil.which(client) is None:
        log_message(f"Database client '{client}' not found", "DEBUG")
        return DB_ENGINE_NONE, DB_VERSION_NONE

    try:
        result = subprocess.run([client, "-V"], capture_output=True, text=True, timeout=PHP_QUERY_TIMEOUT)
    except (OSError, subprocess.SubprocessError) as e:
        log_message(f"Failed to query database client: {e}", "WARNING")
        return DB_ENGINE_NONE, DB_VERSION_NONE

    if result.returncode != 0:
        log_message(f"Database client exited with {result.returncode}", "WARNING")
        return DB_ENGINE_NONE, DB_VERSION_NONE

    return parse_mysql_version_output(result.stdout)


def runtime_sort_key(version: str):
    match = RUNTIME_DIR_PATTERN.match(version)
    return (int(match.group(1)) if match else -1, version)


def detect_runtime_versions(runtime_dir: str) -> Tuple[str, ...]:
    """List `phpNN` directories under runtime_dir; a missing directory gives ()."""
    try:
        entries = os.listdir(runtime_dir)
    except OSError:
        log_message(f"Runtime directory not present: {runtime_dir}", "DEBUG")
        return ()

    versions = [
        entry for entry in entries
        if RUNTIME_DIR_PATTERN.match(entry) and os.path.isdir(os.path.join(runtime_dir, entry))
    ]
    return tuple(sorted(versions, key=runtime_sort_key))


def capture(config) -> EnvironmentSnapshot:
    """Inspect the local host. Never raises."""
    log_message("Inspecting local environment...")

    engine, version = detect_database()
    snapshot = EnvironmentSnapshot(
        os=detect_os(config.os_release_path),
        database_engine=engine,
        database_version=version,
        runtime_versions=detect_runtime_versions(config.runtime_dir),
        captured_at=now_iso(),
    )

    log_message(f"  OS: {snapshot.os}")
    log_message(f"  Database: {snapshot.database_engine} {snapshot.database_version}")
    log_message(f"  PHP runtimes: {', '.join(snapshot.runtime_versions) or 'none'}")
    return snapshot


class ExtensionLister:
    """Lists the extensions a runtime version provides."""

    def list_extensions(self, version: str) -> Set[str]:
        raise NotImplementedError


def parse_php_modules(output: str) -> Set[str]:
    """Parse `php -m` output; section headers and blank lines are dropped."""
    extensions = set()
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith('['):
            continue
        extensions.add(line.lower())
    return extensions


class PhpExtensionLister(ExtensionLister):
    """Asks a runtime's own php binary for its loaded modules."""

    def __init__(self, runtime_dir: str):
        self.runtime_dir = runtime_dir

    def list_extensions(self, version: str) -> Set[str]:
        php_bin = os.path.join(self.runtime_dir, version, "bin", "php")
        if not os.access(php_bin, os.X_OK):
            log_message(f"No php binary for {version} at {php_bin}", "DEBUG")
            return set()

        try:
            result = subprocess.run([php_bin, "-m"], capture_output=True, text=True, timeout=PHP_QUERY_TIMEOUT)
        except (OSError, subprocess.SubprocessError) as e:
            log_message(f"Failed to list extensions for {version}: {e}", "WARNING")
            return set()

        if result.returncode != 0:
            log_message(f"php -m for {version} exited with {result.returncode}", "WARNING")
            return set()

        return parse_php_modules(result.stdout)
