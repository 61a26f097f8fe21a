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
Run configuration for the migration tool.

A single immutable MigrationConfig is built once at startup from the packaged
index.json defaults, an optional operator config file and CLI overrides, then
handed explicitly to every component.
"""

import os
import json
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple

from .index import log_message
from .errors import PreconditionError

DEFAULT_INDEX_PATH = os.path.join(os.path.dirname(__file__), "..", "index.json")


@dataclass(frozen=True)
class MigrationConfig:
    """Immutable settings for one migration run."""
    backup_dir: str = "/root/aapanel_backup"
    prefix: str = "aapanel"
    manifest_name: str = "migration.json"
    app_name: str = "aaPanel Migration Tool"
    app_version: str = "unknown"
    roots: Tuple[str, ...] = (
        "/www/wwwroot",
        "/www/server/data",
        "/www/server/panel",
        "/www/server/php",
        "/www/server/nginx",
        "/www/server/panel/vhost/nginx",
        "/etc/supervisor",
        "/etc/crontab",
        "/var/spool/cron",
    )
    required_prefixes: Tuple[str, ...] = ("www/wwwroot", "www/server/panel", "www/server/data")
    runtime_dir: str = "/www/server/php"
    web_root: str = "/www/wwwroot"
    os_release_path: str = "/etc/os-release"
    restore_root: str = "/"
    panel_cli: str = "bt"
    package_update_command: Tuple[str, ...] = ("apt-get", "update", "-y")
    package_install_command: Tuple[str, ...] = ("apt-get", "install", "-y")
    transfer_tool: str = "rsync"
    fallback_tool: str = "scp"
    ssh_control_path: str = "/tmp/ssh-%r@%h:%p"
    ssh_control_persist: str = "10m"
    web_service: str = "nginx"
    database_service: str = "mysql"
    panel_service: str = "aaPanel"
    fpm_service_template: str = "php-fpm-{digits}"
    health_ports: Tuple[int, ...] = (22, 80, 443, 8888)
    health_url: str = "http://127.0.0.1/"
    health_timeout: int = 5
    dry_run: bool = False

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.backup_dir, self.manifest_name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional['MigrationConfig'] = None) -> 'MigrationConfig':
        """Overlay known keys from data onto base (or the built-in defaults)."""
        base = base or cls()
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                log_message(f"Ignoring unknown config key: {key}", "WARNING")
                continue
            if isinstance(value, list):
                value = tuple(value)
            values[key] = value
        return replace(base, **values)


def _read_config_document(path: str) -> Dict[str, Any]:
    with open(path, 'r') as f:
        document = json.load(f)
    if not isinstance(document, dict):
        raise ValueError("config document must be a JSON object")
    return document


def load_config(config_path: Optional[str] = None, **overrides) -> MigrationConfig:
    """
    Build the run configuration.

    Packaged defaults come from index.json next to the package; an unreadable
    default document falls back to the built-in values. An operator config file
    that was asked for explicitly must load, otherwise the run cannot start.

    Args:
        config_path: Optional operator config file (same layout as index.json)
        **overrides: Final field overrides, e.g. from CLI flags; None values are ignored

    Returns:
        MigrationConfig: The frozen configuration for this run
    """
    config = MigrationConfig()

    try:
        document = _read_config_document(DEFAULT_INDEX_PATH)
        version = document.get("metadata", {}).get("schema_version", "unknown")
        config = MigrationConfig.from_dict(document.get("config", {}), base=replace(config, app_version=version))
    except (OSError, ValueError) as e:
        log_message(f"Failed to load packaged config, using defaults: {e}", "WARNING")

    if config_path:
        try:
            document = _read_config_document(config_path)
        except (OSError, ValueError) as e:
            raise PreconditionError("config file unreadable", f"{config_path}: {e}")
        config = MigrationConfig.from_dict(document.get("config", document), base=config)
        log_message(f"Loaded config overrides from {config_path}", "DEBUG")

    cli_values = {k: v for k, v in overrides.items() if v is not None}
    if cli_values:
        config = MigrationConfig.from_dict(cli_values, base=config)

    return config
